"""
Single-slot session state for the service.

The process holds one `SessionStore`: at most one loaded `Dataset` and at most
one configured LLM backend. Both slots are independently optional and each is
replaced wholesale on write. There is no lock: concurrent requests follow
last-write-wins, and a request keeps using whatever values it read before it
suspended.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Dataset:
    """
    A loaded table.

    `row_count` and `column_count` are derived from `rows`; the column count is
    the number of keys in the first record, or 0 for an empty table.
    """
    rows: List[Dict[str, Any]] = field(metadata={"description": "Ordered row records, column name -> scalar value."})
    source_name: str = field(metadata={"description": "Display name of the originating file."})

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_count(self) -> int:
        return len(self.rows[0]) if self.rows else 0

    @property
    def columns(self) -> List[str]:
        return list(self.rows[0].keys()) if self.rows else []

    def preview(self, limit: int = 5) -> List[Dict[str, Any]]:
        """Returns the first `limit` rows for display."""
        return self.rows[:limit]

    def info(self) -> Dict[str, Any]:
        return {
            "filename": self.source_name,
            "rows": self.row_count,
            "columns": self.column_count,
        }


@dataclass
class SessionState:
    """The current contents of the session, returned by reference."""
    dataset: Optional[Dataset] = None
    backend: Optional[Any] = None


class SessionStore:
    """
    Holds the current dataset and LLM backend for the process.

    The backend is opaque here; it is only passed through to the analysis
    engine.
    """
    def __init__(self) -> None:
        self._state = SessionState()
        logger.info("session_store_initialized", message="Session state is in-memory. All data will be lost on server restart.")

    def get(self) -> SessionState:
        """
        Returns the live session state.

        Callers must not mutate the dataset's rows in place.
        """
        return self._state

    @property
    def dataset(self) -> Optional[Dataset]:
        return self._state.dataset

    @property
    def backend(self) -> Optional[Any]:
        return self._state.backend

    def set_dataset(self, dataset: Dataset) -> None:
        previous = self._state.dataset
        self._state.dataset = dataset
        logger.info(
            "session_dataset_replaced",
            source_name=dataset.source_name,
            rows=dataset.row_count,
            columns=dataset.column_count,
            previous_source_name=previous.source_name if previous else None,
        )

    def set_backend(self, backend: Any) -> None:
        self._state.backend = backend
        logger.info("session_backend_replaced", backend=backend_label(backend))

    def clear(self) -> None:
        self._state.dataset = None
        self._state.backend = None
        logger.info("session_cleared")

    def snapshot(self) -> Dict[str, Any]:
        """
        Returns presence flags plus dataset metadata, never raw rows.

        Returns:
            Dict[str, Any]: `data_loaded`, `llm_configured` and `dataframe_info`
                            (None when no dataset is loaded).
        """
        dataset = self._state.dataset
        return {
            "data_loaded": dataset is not None,
            "llm_configured": self._state.backend is not None,
            "dataframe_info": dataset.info() if dataset is not None else None,
        }


def backend_label(backend: Any) -> Optional[str]:
    """Best-effort display label for a backend handle."""
    if backend is None:
        return None
    provider = getattr(backend, "provider_name", None)
    model = getattr(backend, "model", None)
    if provider and model:
        return f"{provider}/{model}"
    return model or provider or type(backend).__name__
