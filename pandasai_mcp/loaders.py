"""Table loading for uploaded CSV and Excel files"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Iterable

import pandas as pd
import structlog

from . import exceptions
from .session import Dataset

logger = structlog.get_logger(__name__)

CSV_EXTENSIONS = {'.csv'}
EXCEL_EXTENSIONS = {'.xlsx', '.xls'}


def detect_extension(filename: str, allowed_extensions: Iterable[str]) -> str:
    """
    Returns the lower-cased extension of `filename`.

    Raises:
        exceptions.UnsupportedFormatError: If the extension is not allowed.
    """
    suffix = Path(filename).suffix.lower()
    if suffix not in allowed_extensions or suffix not in CSV_EXTENSIONS | EXCEL_EXTENSIONS:
        logger.warn("table_format_not_allowed", filename=filename, suffix=suffix, allowed_extensions=sorted(allowed_extensions))
        raise exceptions.UnsupportedFormatError(filename=filename, extension=suffix or None)
    return suffix


def frame_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Converts a DataFrame to row records, with missing values as None."""
    df = df.astype(object).where(pd.notna(df), None)
    return df.to_dict(orient='records')


def _read_frame(path: Path, suffix: str) -> pd.DataFrame:
    if suffix in CSV_EXTENSIONS:
        return pd.read_csv(path)
    # First sheet only
    return pd.read_excel(path, sheet_name=0)


def _load_table_sync(path: Path, suffix: str, source_name: str) -> Dataset:
    try:
        df = _read_frame(path, suffix)
    except pd.errors.EmptyDataError:
        df = pd.DataFrame()
    except Exception as e:
        logger.error("table_load_failed", path=str(path), suffix=suffix, error=str(e), exc_info=True)
        raise exceptions.DatasetLoadError(str(e)) from e

    df.columns = [str(col) for col in df.columns]
    dataset = Dataset(rows=frame_to_records(df), source_name=source_name)
    logger.info("table_loaded", source_name=source_name, rows=dataset.row_count, columns=dataset.column_count)
    return dataset


async def load_table(
    path: Path,
    source_name: Optional[str] = None,
    allowed_extensions: Iterable[str] = CSV_EXTENSIONS | EXCEL_EXTENSIONS
) -> Dataset:
    """
    Loads a CSV or Excel file into a `Dataset`.

    The format is taken from the extension of `source_name` (the name the
    client uploaded) when given, otherwise from `path`. Parsing runs in a worker
    thread.

    Args:
        path: Location of the file on disk.
        source_name: Display name for the dataset. Defaults to the file name.
        allowed_extensions: Extensions accepted by the caller.

    Returns:
        Dataset: The parsed rows.

    Raises:
        exceptions.UnsupportedFormatError: If the extension is not supported.
        exceptions.DatasetLoadError: If the file cannot be parsed.
    """
    path = Path(path)
    name = source_name or path.name
    suffix = detect_extension(name, allowed_extensions)
    return await asyncio.to_thread(_load_table_sync, path, suffix, name)
