"""
Extraction boundary: turns source rows (matric number + class of degree)
into ExternalRecords.

Reading the actual graduands / upload files is the extractor's job; this
module only accepts already-tabular data (CSV/XLSX via pandas, or any
iterable of rows) and applies the per-row bookkeeping the review screens
show: malformed matric numbers, duplicate rows and unknown labels are
collected, never raised.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from matric_recon.errors import ExtractionFailure, MalformedKeyError
from matric_recon.models import ExternalRecord
from matric_recon.normalizer import try_normalize
from matric_recon.values import canonical_value, is_known_value

KEY_ALIASES = ["matric_no", "matric", "matric number", "matric_number", "matricno", "mat no", "reg no", "registration number"]
VALUE_ALIASES = ["class_of_degree", "class of degree", "degree class", "class", "classification", "grade"]

SAMPLE_SIZE = 5

Row = Tuple[Optional[str], Optional[int], object, object]


@dataclass
class ExtractionResult:
    records: List[ExternalRecord] = field(default_factory=list)
    errors: List[MalformedKeyError] = field(default_factory=list)
    duplicates: List[Dict] = field(default_factory=list)
    invalid_values: List[Dict] = field(default_factory=list)
    samples: List[Dict] = field(default_factory=list)
    sheets: Dict[str, Dict] = field(default_factory=dict)
    # sheet name -> reason it contributed no rows
    skipped_sheets: Dict[str, str] = field(default_factory=dict)
    total_rows: int = 0

    def summary(self) -> Dict:
        return {
            "total_rows": self.total_rows,
            "valid": len(self.records),
            "malformed": len(self.errors),
            "duplicates": len(self.duplicates),
            "invalid_values": len(self.invalid_values),
            "sheets_processed": len(self.sheets),
            "sheets_skipped": len(self.skipped_sheets),
        }


def _sheet_summary(result: ExtractionResult, sheet: str) -> Dict:
    return result.sheets.setdefault(sheet, {"rows_processed": 0, "valid": 0, "invalid": 0, "duplicates": 0})


def extract_rows(rows: Iterable[Row], delimiters: str = "/", allowed_values=None, case_insensitive: bool = True) -> ExtractionResult:
    result = ExtractionResult()
    seen: Dict[str, ExternalRecord] = {}
    for sheet, row_no, raw_key, raw_value in rows:
        result.total_rows += 1
        sheet_name = sheet or "default"
        summary = _sheet_summary(result, sheet_name)
        summary["rows_processed"] += 1

        key, err = try_normalize(raw_key, delimiters, sheet, row_no)
        if err is not None:
            result.errors.append(err)
            summary["invalid"] += 1
            continue

        value = canonical_value(raw_value, allowed_values, case_insensitive)
        if not is_known_value(value, allowed_values):
            result.invalid_values.append({"sheet": sheet, "row": row_no, "matric": str(raw_key), "value": value})

        first = seen.get(key.text)
        if first is not None:
            result.duplicates.append({
                "sheet": sheet,
                "row": row_no,
                "matric": str(raw_key),
                "value": value,
                "first_row": first.row,
                "first_value": first.value,
            })
            summary["duplicates"] += 1
            continue

        rec = ExternalRecord(raw_key=str(raw_key).strip(), normalized_key=key, value=value, sheet=sheet, row=row_no)
        seen[key.text] = rec
        result.records.append(rec)
        summary["valid"] += 1
        if len(result.samples) < SAMPLE_SIZE:
            result.samples.append({"sheet": sheet, "row": row_no, "original_matric": str(raw_key), "normalized": key.text})
    return result


def _norm_header(name) -> str:
    return " ".join(str(name).replace("_", " ").lower().split())


def _find_column(columns, wanted: Optional[str], aliases: List[str]) -> Optional[str]:
    if wanted:
        for col in columns:
            if _norm_header(col) == _norm_header(wanted):
                return col
        return None
    normalized = {_norm_header(c): c for c in columns}
    for alias in aliases:
        col = normalized.get(_norm_header(alias))
        if col is not None:
            return col
    return None


def _read_frames(path: str) -> Dict[str, pd.DataFrame]:
    if not os.path.exists(path):
        raise ExtractionFailure(path, "file not found")
    ext = os.path.splitext(path)[1].lower()
    try:
        if ext == ".csv":
            return {os.path.basename(path): pd.read_csv(path, dtype=str)}
        if ext == ".xlsx":
            return pd.read_excel(path, sheet_name=None, dtype=str)
    except Exception as e:
        raise ExtractionFailure(path, f"unreadable file: {e}") from e
    raise ExtractionFailure(path, f"unsupported file type {ext or '(none)'}")


def _cell(v):
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return None
    return v


def extract(path: str, key_column: Optional[str] = None, value_column: Optional[str] = None,
            delimiters: str = "/", allowed_values=None, case_insensitive: bool = True) -> ExtractionResult:
    """Read a CSV/XLSX source file into external records.

    Raises ExtractionFailure when the whole file is unusable; a run never
    gets a partial classification from a broken file.
    """
    frames = _read_frames(path)
    rows: List[Row] = []
    skipped: Dict[str, str] = {}
    usable = 0
    for sheet, df in frames.items():
        kcol = _find_column(df.columns, key_column, KEY_ALIASES)
        if kcol is None:
            skipped[sheet] = "no matric number column"
            continue
        vcol = _find_column(df.columns, value_column, VALUE_ALIASES)
        if vcol is None:
            # every row would read as an empty class of degree
            skipped[sheet] = "no class of degree column"
            print(f"⚠️ {path} [{sheet}]: no class of degree column, sheet skipped")
            continue
        usable += 1
        for i, record in enumerate(df.to_dict("records")):
            key = _cell(record.get(kcol))
            value = _cell(record.get(vcol))
            if key is None and value is None:
                continue
            # header is spreadsheet row 1
            rows.append((sheet, i + 2, key, value))

    if usable == 0:
        reasons = sorted(set(skipped.values()))
        raise ExtractionFailure(path, "no sheet has a matric number and a class of degree column (" + ", ".join(reasons) + ")")
    if not rows:
        raise ExtractionFailure(path, "no data rows")
    result = extract_rows(rows, delimiters, allowed_values, case_insensitive)
    result.skipped_sheets = skipped
    return result
