"""
CSV / plain-text upload extractor for bulk snowball intake
"""

import io
import pandas as pd
from dataclasses import dataclass
from pathlib import Path
from typing import List, Union
from core.exceptions import ValidationError
import logging

logger = logging.getLogger(__name__)

EMAIL_COLUMN_ALIASES = ("email", "e-mail", "email_address", "emails", "mail")


@dataclass(frozen=True)
class UploadRow:
    row: int  # 1-based data row number
    raw: str


class CSVUploadExtractor:
    """
    Extract raw email values from an uploaded file.

    Supports:
    - CSV with an `email` column (header matched after trimming and lower-casing)
    - One email per line, with or without a header
    - UTF-8 with or without BOM

    Values are returned as submitted; validation happens in the intake
    pipeline so malformed rows are counted, not dropped.
    """

    def __init__(self, email_column: str = "email"):
        self.email_column = email_column

    def extract(self, content: Union[str, bytes]) -> List[UploadRow]:
        text = self._decode(content)
        if not text.strip():
            return []

        try:
            df = pd.read_csv(
                io.StringIO(text),
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
            )
        except pd.errors.EmptyDataError:
            return []
        except pd.errors.ParserError as e:
            # Ragged rows: not a well-formed CSV, treat as one value per line
            logger.warning(f"Upload is not a well-formed CSV, reading line by line: {str(e)[:200]}")
            return self._extract_lines(text)

        # Normalize column names (strip whitespace, lowercase)
        df.columns = df.columns.str.strip().str.lower().str.replace(' ', '_')

        column = self._find_email_column(list(df.columns))
        if column is not None:
            values = [str(v) for v in df[column].tolist()]
            logger.info(f"Read {len(values)} rows from CSV column '{column}'")
            return [UploadRow(row=i + 1, raw=v) for i, v in enumerate(values)]

        return self._extract_lines(text)

    def extract_file(self, file_path: Union[str, Path]) -> List[UploadRow]:
        path = Path(file_path)
        if not path.exists():
            raise ValidationError("Upload file not found", context={"file_path": str(path)})
        logger.info(f"Reading upload from {path}")
        return self.extract(path.read_bytes())

    def _find_email_column(self, columns: List[str]):
        preferred = self.email_column.strip().lower()
        if preferred in columns:
            return preferred
        for alias in EMAIL_COLUMN_ALIASES:
            if alias in columns:
                return alias
        return None

    @staticmethod
    def _extract_lines(text: str) -> List[UploadRow]:
        """One value per line; blank lines are not rows"""
        values = [line.strip() for line in text.splitlines()]
        values = [v for v in values if v]
        if values and values[0].lower() in EMAIL_COLUMN_ALIASES:
            values = values[1:]
        logger.info(f"Read {len(values)} rows from line-delimited upload")
        return [UploadRow(row=i + 1, raw=v) for i, v in enumerate(values)]

    @staticmethod
    def _decode(content: Union[str, bytes]) -> str:
        if isinstance(content, bytes):
            return content.decode("utf-8-sig", errors="replace")
        return content.lstrip("\ufeff")
