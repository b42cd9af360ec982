"""utils_cleaning.py: Loading and cleaning utilities for the wine review dataset."""
import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Constants
RETAINED_COLUMNS = ['country', 'rating', 'price', 'province', 'variety']
CATEGORICAL_COLUMNS = ['country', 'province', 'variety']
NUMERIC_COLUMNS = ['price', 'rating']
COLUMN_RENAMES = {
    'points': 'rating',
    'Unnamed: 0': 'review_id',
}
MIN_CATEGORY_COUNT = 10  # Categories with fewer rows are filtered out


def load_wine_reviews(file_path, sep=','):
    """
    Load the raw wine review table and rename ambiguous columns.

    Args:
        file_path: Path to a UTF-8 delimited file with the review data
        sep: Field delimiter

    Returns:
        DataFrame with the raw reviews ('points' renamed to 'rating')

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a required column is missing
    """
    raw_df = rename_columns(pd.read_csv(file_path, encoding='utf-8', sep=sep))

    missing = [col for col in RETAINED_COLUMNS if col not in raw_df.columns]
    if missing:
        raise ValueError(f"Required columns not found in {file_path}: {missing}")

    logger.info(f"Loaded {len(raw_df)} reviews with {raw_df.shape[1]} columns from {file_path}")
    return raw_df


def rename_columns(df):
    """Rename ambiguous raw columns ('points' becomes 'rating')."""
    return df.rename(columns=COLUMN_RENAMES)


def select_retained_columns(df):
    """Keep only the columns used by the analysis."""
    return df[RETAINED_COLUMNS].copy()


def coerce_column_types(df):
    """
    Make the text-to-number coercion explicit.

    Blank strings become missing, price and rating are coerced to numbers
    (non-numeric values become NaN) and non-positive prices become NaN so
    that log2(price) is always defined on surviving rows.

    Args:
        df: DataFrame with the retained columns

    Returns:
        New DataFrame with coerced columns
    """
    df = df.copy()
    for col in CATEGORICAL_COLUMNS + NUMERIC_COLUMNS:
        df[col] = df[col].map(lambda x: x.strip() if isinstance(x, str) else x)
        df[col] = df[col].where(df[col] != '', np.nan)

    for col in NUMERIC_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors='coerce').astype(float)

    df['price'] = df['price'].where(df['price'] > 0)
    return df


def drop_incomplete_rows(df):
    """Drop every row with a missing value in any retained column."""
    return df.dropna(subset=RETAINED_COLUMNS, how='any').reset_index(drop=True)


def convert_to_categories(df):
    """Convert the categorical columns to pandas 'category' dtype."""
    df = df.copy()
    for col in CATEGORICAL_COLUMNS:
        df[col] = df[col].astype(str).astype('category')
    return df


def _filter_by_category_count(df, column, min_count=MIN_CATEGORY_COUNT):
    """Drop rows whose category occurs fewer than min_count times and re-derive levels."""
    counts = df[column].value_counts()
    rare = counts[counts < min_count].index
    filtered = df[~df[column].isin(rare)].copy()
    filtered[column] = filtered[column].cat.remove_unused_categories()
    logger.info(f"Removed {len(rare)} {column} levels with < {min_count} rows "
                f"({len(df) - len(filtered)} rows)")
    return filtered.reset_index(drop=True)


def filter_rare_categories(df, min_count=MIN_CATEGORY_COUNT):
    """
    Remove rare provinces, then rare countries.

    The two passes run in this fixed order and provinces are not re-checked
    after the country pass, so a province can end up below min_count only if
    it was shared across a dropped country. Levels left without rows are
    removed from every categorical column.

    Args:
        df: DataFrame with categorical country and province columns
        min_count: Minimum number of rows a level needs to be kept

    Returns:
        Filtered DataFrame with unused levels removed
    """
    df = _filter_by_category_count(df, 'province', min_count)
    df = _filter_by_category_count(df, 'country', min_count)
    for col in CATEGORICAL_COLUMNS:
        if col in df.columns and isinstance(df[col].dtype, pd.CategoricalDtype):
            df[col] = df[col].cat.remove_unused_categories()
    return df


def add_derived_columns(df):
    """
    Add log2 price and mean-centered rating.

    Centering uses the mean over the rows passed in, so this runs after all
    row filtering.
    """
    df = df.copy()
    df['log_price'] = np.log2(df['price'])
    df['rating_c'] = df['rating'] - df['rating'].mean()
    return df


def drop_variety(df):
    """Drop the variety column (too many levels for the models)."""
    return df.drop(columns=['variety'])


def clean_wine_reviews(raw_df, min_count=MIN_CATEGORY_COUNT):
    """
    Run the full cleaning pipeline on the raw review table.

    Args:
        raw_df: Raw DataFrame as returned by load_wine_reviews
        min_count: Minimum rows per province/country level

    Returns:
        Cleaned DataFrame with log_price and rating_c columns
    """
    df = select_retained_columns(rename_columns(raw_df))
    df = coerce_column_types(df)
    df = drop_incomplete_rows(df)
    logger.info(f"Rows after dropping incomplete records: {len(df)} (from {len(raw_df)})")

    df = convert_to_categories(df)
    df = filter_rare_categories(df, min_count)
    df = add_derived_columns(df)

    logger.info(f"Cleaned dataset: {len(df)} rows, "
                f"{df['country'].nunique()} countries, {df['province'].nunique()} provinces")
    return df
