"""
Wine Review Exploratory Analysis

This module provides read-only summaries and plots of the wine review data:
missingness of the raw table, level counts of the categorical columns and
log-price distributions by country and by province.
"""
import logging
import os

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

logger = logging.getLogger(__name__)

# Global constants
TOP_COUNTRY_COUNT = 5
DEFAULT_HIST_BINS = 30
BOXPLOT_WHISKER = 1.5  # Whisker length in IQR units
BOX_STAT_COLUMNS = ['count', 'min', 'lower_whisker', 'q1', 'median', 'q3',
                    'upper_whisker', 'max']
PLOT_DPI = 300


def missing_value_counts(raw_df):
    """
    Count missing or blank values per column of the raw table.

    Args:
        raw_df: Raw DataFrame before cleaning

    Returns:
        Series of missing counts indexed by column, sorted descending
    """
    blank = raw_df.apply(
        lambda col: col.map(lambda x: isinstance(x, str) and x.strip() == '')
    )
    counts = (raw_df.isna() | blank).sum()
    return counts.sort_values(ascending=False)


def unique_value_counts(df, columns=('country', 'province', 'variety')):
    """Number of distinct levels per categorical column, sorted descending."""
    present = [col for col in columns if col in df.columns]
    return df[present].nunique().sort_values(ascending=False)


def top_countries(df, n=TOP_COUNTRY_COUNT):
    """Return the n countries with the most reviews, most frequent first."""
    counts = df['country'].value_counts()
    return counts[counts > 0].head(n).index.tolist()


def log_price_box_stats(df, by):
    """
    Compute boxplot statistics of log_price for each level of a grouping column.

    Args:
        df: Cleaned DataFrame
        by: Grouping column name (e.g. 'country')

    Returns:
        DataFrame indexed by group with count, min, whiskers, quartiles and max,
        sorted by median descending
    """
    rows = {}
    for level, values in df.groupby(by, observed=True)['log_price']:
        if values.empty:
            continue
        rows[level] = _box_stats(values.to_numpy())
    stats_df = pd.DataFrame.from_dict(rows, orient='index', columns=BOX_STAT_COLUMNS)
    stats_df.index.name = by
    return stats_df.sort_values('median', ascending=False)


def _box_stats(values):
    """Tukey boxplot statistics for a 1-d array."""
    q1, median, q3 = np.percentile(values, [25, 50, 75])
    iqr = q3 - q1
    lower = values[values >= q1 - BOXPLOT_WHISKER * iqr].min()
    upper = values[values <= q3 + BOXPLOT_WHISKER * iqr].max()
    return [len(values), values.min(), lower, q1, median, q3, upper, values.max()]


def province_box_stats_for_top_countries(df, n=TOP_COUNTRY_COUNT):
    """Boxplot statistics of log_price by province, one table per top country."""
    result = {}
    for country in top_countries(df, n):
        subset = df[df['country'] == country]
        result[country] = log_price_box_stats(subset, 'province')
    return result


def _save_plot(output_dir, filename, dpi=PLOT_DPI):
    """Save plot to specified directory."""
    os.makedirs(output_dir, exist_ok=True)
    plt.savefig(os.path.join(output_dir, filename), dpi=dpi, bbox_inches='tight')


def plot_distributions(df, output_dir=None):
    """Plot histograms of price, log2 price and rating."""
    plt.figure(figsize=(15, 5))
    panels = [
        ('price', 'Price (USD)'),
        ('log_price', 'log2(Price)'),
        ('rating', 'Rating (points)'),
    ]
    for i, (column, label) in enumerate(panels, start=1):
        plt.subplot(1, 3, i)
        plt.hist(df[column].dropna(), bins=DEFAULT_HIST_BINS, alpha=0.7,
                 color='blue', edgecolor='black')
        plt.xlabel(label)
        plt.ylabel('Frequency')
        plt.title(f'Distribution of {label}')
        plt.grid(axis='y', alpha=0.75)
    plt.tight_layout()

    if output_dir:
        _save_plot(output_dir, 'distributions.png')
    plt.show()
    plt.close()


def plot_log_price_by_group(df, by, title, output_dir=None, filename=None):
    """
    Boxplot of log_price for each level of a grouping column, ordered by median.

    Args:
        df: Cleaned DataFrame
        by: Grouping column name
        title: Plot title
        output_dir: Directory to save the plot
        filename: File name of the saved plot
    """
    order = (df.groupby(by, observed=True)['log_price'].median()
             .sort_values(ascending=False).index.tolist())
    plt.figure(figsize=(12, len(order) * 0.3 + 2))
    sns.boxplot(data=df, x='log_price', y=by, order=order, color='skyblue',
                whis=BOXPLOT_WHISKER, fliersize=2)
    plt.xlabel('log2(Price)')
    plt.ylabel(by.capitalize())
    plt.title(title, fontsize=14)
    plt.tight_layout()

    if output_dir:
        _save_plot(output_dir, filename or f'log_price_by_{by}.png')
    plt.show()
    plt.close()


def run_exploration(raw_df, cleaned_df, output_dir=None, n_top=TOP_COUNTRY_COUNT):
    """
    Print all exploratory tables and render all exploratory plots.

    Args:
        raw_df: Raw DataFrame before cleaning
        cleaned_df: Cleaned DataFrame (with variety still present)
        output_dir: Directory to save plots
        n_top: Number of top countries to break down by province

    Returns:
        Dictionary with the computed tables
    """
    missing = missing_value_counts(raw_df)
    print("\n=== Missing or Blank Values (raw data) ===")
    print(missing)

    uniques = unique_value_counts(cleaned_df)
    print("\n=== Unique Values per Categorical Column ===")
    print(uniques)

    leaders = top_countries(cleaned_df, n_top)
    print(f"\n=== Top {n_top} Countries by Review Count ===")
    print(cleaned_df['country'].value_counts().head(n_top))

    country_stats = log_price_box_stats(cleaned_df, 'country')
    print("\n=== log2(Price) by Country ===")
    print(country_stats)

    province_stats = province_box_stats_for_top_countries(cleaned_df, n_top)
    for country, stats_df in province_stats.items():
        print(f"\n=== log2(Price) by Province: {country} ===")
        print(stats_df)

    plot_distributions(cleaned_df, output_dir)
    plot_log_price_by_group(cleaned_df, 'country', 'log2(Price) by Country', output_dir)
    for country in leaders:
        subset = cleaned_df[cleaned_df['country'] == country].copy()
        subset['province'] = subset['province'].cat.remove_unused_categories()
        safe_name = country.replace(' ', '_').lower()
        plot_log_price_by_group(subset, 'province', f'log2(Price) by Province: {country}',
                                output_dir, filename=f'log_price_by_province_{safe_name}.png')

    logger.info("Exploratory analysis complete")
    return {
        'missing': missing,
        'unique': uniques,
        'top_countries': leaders,
        'country_stats': country_stats,
        'province_stats': province_stats,
    }
