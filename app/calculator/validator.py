# ==============================================================================
# app/calculator/validator.py
# ------------------------------------------------------------------------------
# Handles the validation of an uploaded deal file's structure and data types.
# ==============================================================================

import os

import pandas as pd
from .schema import EXPECTED_SHEETS

DEAL_SHEET = 'Deals'


def _read_file(filepath):
    extension = os.path.splitext(filepath)[1].lower()
    if extension == '.csv':
        return pd.read_csv(filepath)
    if extension == '.xlsx':
        xls = pd.ExcelFile(filepath)
        # A workbook may name its sheet 'Deals' or just hold a single sheet
        sheet = DEAL_SHEET if DEAL_SHEET in xls.sheet_names else xls.sheet_names[0]
        return pd.read_excel(xls, sheet_name=sheet)
    raise ValueError(f"Unsupported file type '{extension}'")


def validate_import_file(filepath):
    """
    Validates the structure and basic data types of an uploaded deal file.

    Args:
        filepath (str): The path to the uploaded .xlsx or .csv file.

    Returns:
        tuple: A tuple containing:
            - DataFrame: The cleaned deal rows if validation is successful.
            - list: A list of human-readable error messages if validation fails.
    """
    errors = []
    rules = EXPECTED_SHEETS[DEAL_SHEET]

    try:
        df = _read_file(filepath)
    except Exception as e:
        errors.append(f"The file is invalid or could not be read. Technical error: {e}")
        return None, errors

    df.columns = [str(c).strip().lower() for c in df.columns]

    # 1. Check for required columns
    missing_columns = [col for col in rules['required_columns'] if col not in df.columns]
    if missing_columns:
        errors.append(f"The following required columns are missing: {', '.join(missing_columns)}")
        return None, errors

    for col in rules['optional_columns']:
        if col not in df.columns:
            df[col] = None

    # 2. Required values must be present
    for col in rules['required_columns']:
        for index in df[df[col].isna()].index:
            errors.append(f"Row {index + 2}: column '{col}' is empty.")

    # 3. Check numeric columns for non-numeric values
    for col in rules['numeric_columns']:
        # Coerce to numeric, making non-numbers NaN
        numeric_series = pd.to_numeric(df[col].astype(str).str.replace(',', ''), errors='coerce')
        invalid_rows = df[numeric_series.isna() & df[col].notna()]
        for index in invalid_rows.index:
            errors.append(f"Row {index + 2}: value '{invalid_rows.loc[index, col]}' in column '{col}' must be a number.")
        df[col] = numeric_series

    # 4. Dates must parse
    for col in rules['date_columns']:
        parsed = pd.to_datetime(df[col], errors='coerce')
        invalid_rows = df[parsed.isna() & df[col].notna()]
        for index in invalid_rows.index:
            errors.append(f"Row {index + 2}: value '{invalid_rows.loc[index, col]}' in column '{col}' is not a valid date.")
        df[col] = parsed.dt.date

    # 5. Enumerated columns
    for col, allowed in rules['allowed_values'].items():
        normalized = df[col].map(lambda v: None if pd.isna(v) else str(v).strip().lower().replace(' ', '_'))
        for index in df[normalized.notna() & ~normalized.isin(allowed)].index:
            errors.append(f"Row {index + 2}: '{df.loc[index, col]}' is not a valid {col}. Expected one of: {', '.join(allowed)}.")
        df[col] = normalized

    if errors:
        return None, errors

    df = df.astype(object).where(df.notna(), None)
    return df, []
