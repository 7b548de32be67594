"""Natural-language analysis of the loaded table"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import structlog

from .config import settings
from .llm_providers import LLMProvider, Message
from .session import Dataset

logger = structlog.get_logger(__name__)


def _clean(value: Any) -> Optional[float]:
    return None if pd.isna(value) else round(float(value), 4)


def _summarize_sync(dataset: Dataset, sample_rows: int) -> Dict[str, Any]:
    """
    Builds a JSON-safe overview of the dataset: shape, dtypes, missing values,
    numeric statistics and a sample of rows.
    """
    df = pd.DataFrame.from_records(dataset.rows, columns=dataset.columns).infer_objects()
    numeric_df = df.select_dtypes(include=[np.number])
    categorical_columns: List[str] = [col for col in df.columns if col not in numeric_df.columns]

    numeric_stats: Dict[str, Dict[str, Optional[float]]] = {}
    if not numeric_df.empty:
        numeric_stats = {
            col: {stat: _clean(val) for stat, val in series.items()}
            for col, series in numeric_df.describe().items()
        }

    top_values: Dict[str, Dict[str, int]] = {}
    for col in categorical_columns:
        counts = df[col].dropna().astype(str).value_counts().head(5)
        top_values[col] = {str(k): int(v) for k, v in counts.items()}

    missing = df.isnull().sum() if not df.empty else pd.Series(dtype=int)
    return {
        "dataset_name": dataset.source_name,
        "shape": {"rows": dataset.row_count, "columns": dataset.column_count},
        "columns": dataset.columns,
        "dtypes": {col: str(dtype) for col, dtype in df.dtypes.items()},
        "numeric_columns": list(numeric_df.columns),
        "categorical_columns": categorical_columns,
        "missing_values": {col: int(val) for col, val in missing.items()},
        "numeric_stats": numeric_stats,
        "top_values": top_values,
        "sample": dataset.rows[:sample_rows],
    }


async def summarize_dataset(dataset: Dataset, sample_rows: int = 20) -> Dict[str, Any]:
    """Asynchronously builds the dataset overview in a worker thread."""
    return await asyncio.to_thread(_summarize_sync, dataset, sample_rows)


def build_messages(summary: Dict[str, Any], query: str, system_prompt: str) -> List[Message]:
    table_context = json.dumps(summary, ensure_ascii=False, default=str, indent=2)
    return [
        Message(role="system", content=system_prompt),
        Message(role="user", content=f"Table overview:\n{table_context}\n\nQuestion: {query}"),
    ]


class AnalysisEngine:
    """
    Answers a question about a dataset by summarizing it locally and asking
    the configured LLM backend.
    """
    def __init__(self, sample_rows: Optional[int] = None, system_prompt: Optional[str] = None) -> None:
        self.sample_rows = settings.ANALYSIS_SAMPLE_ROWS if sample_rows is None else sample_rows
        self.system_prompt = system_prompt or settings.ANALYSIS_SYSTEM_PROMPT

    async def analyze(self, dataset: Dataset, query: str, backend: LLMProvider) -> Dict[str, Any]:
        """
        Args:
            dataset: The table to analyze.
            query: The user's question in natural language.
            backend: The configured LLM provider.

        Returns:
            Dict[str, Any]: `answer` (may be empty), `dataset_name`, `provider`, `model`.

        Raises:
            Exception: Whatever the summary step or the provider raises; the
                       tool router wraps it.
        """
        summary = await summarize_dataset(dataset, self.sample_rows)
        messages = build_messages(summary, query, self.system_prompt)

        logger.info("analysis_started", dataset_name=dataset.source_name, query=query, rows=dataset.row_count)
        answer = await backend.chat(messages)
        logger.info("analysis_completed", dataset_name=dataset.source_name, answer_length=len(answer or ""))

        return {
            "answer": answer,
            "dataset_name": dataset.source_name,
            "provider": getattr(backend, "provider_name", None),
            "model": getattr(backend, "model", None),
        }
