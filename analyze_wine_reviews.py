"""
Wine price analysis: cleaning, exploration, regularized and hierarchical regression.

Usage:
  python3 analyze_wine_reviews.py --data winemag-data-130k-v2.csv
  python3 analyze_wine_reviews.py --data reviews.csv --refit          # Ignore the cached model
  python3 analyze_wine_reviews.py --data reviews.csv --skip-explore --skip-regularized
"""
import argparse
import logging
import os
from logging.handlers import RotatingFileHandler

import matplotlib

from utils_cleaning import load_wine_reviews, clean_wine_reviews, drop_variety
from explore_wine_data import run_exploration
from regularized_regression import run_regularized_models
from bayesian_modeling import (
    load_or_fit_hierarchical_model,
    OUTPUT_DIR,
    NUM_CHAINS,
    MCMC_WARMUP_STEPS,
    MCMC_SAMPLE_STEPS,
    RANDOM_SEED,
)
from utils_bayesian import (
    compute_rhat,
    check_convergence,
    plot_traces,
    posterior_predictive_check,
    visualize_residuals,
    posterior_summary,
    prior_summary,
    extract_group_effects,
    visualize_effects,
    save_results,
)

# Constants
DEFAULT_DATA_PATH = 'winemag-data-130k-v2.csv'
LOG_FILE = 'wine_analysis.log'
LOG_MAX_SIZE = 10_000_000  # 10MB
LOG_BACKUP_COUNT = 5

logger = logging.getLogger(__name__)


def setup_logging(log_file=LOG_FILE, level=logging.INFO):
    """Configure logging to a rotating file and the console."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            RotatingFileHandler(
                log_file,
                maxBytes=LOG_MAX_SIZE,
                backupCount=LOG_BACKUP_COUNT,
                encoding='utf-8'
            ),
            logging.StreamHandler()
        ]
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Wine price analysis')
    parser.add_argument('--data', default=DEFAULT_DATA_PATH, help='Path to the review CSV')
    parser.add_argument('--output-dir', default=OUTPUT_DIR, help='Directory for figures and tables')
    parser.add_argument('--cache-path', default=None,
                        help='Pickled hierarchical model (default: <output-dir>/hierarchical_model.pkl)')
    parser.add_argument('--refit', action='store_true', help='Resample even if a cached model exists')
    parser.add_argument('--chains', type=int, default=NUM_CHAINS)
    parser.add_argument('--warmup', type=int, default=MCMC_WARMUP_STEPS)
    parser.add_argument('--samples', type=int, default=MCMC_SAMPLE_STEPS)
    parser.add_argument('--seed', type=int, default=RANDOM_SEED)
    parser.add_argument('--skip-explore', action='store_true')
    parser.add_argument('--skip-regularized', action='store_true')
    parser.add_argument('--skip-bayesian', action='store_true')
    parser.add_argument('--no-show', action='store_true', help='Save figures without displaying them')
    return parser.parse_args(argv)


def run_bayesian_analysis(model_df, args):
    """Fit (or load) the hierarchical model, diagnose it and report the group effects."""
    cache_path = args.cache_path or os.path.join(args.output_dir, 'hierarchical_model.pkl')
    fitted = load_or_fit_hierarchical_model(
        model_df,
        cache_path=cache_path,
        refit=args.refit,
        num_chains=args.chains,
        num_warmup=args.warmup,
        num_samples=args.samples,
        seed=args.seed,
    )

    rhat_df = compute_rhat(fitted)
    convergence = check_convergence(rhat_df)
    plot_traces(fitted, output_dir=args.output_dir)

    ppc = posterior_predictive_check(fitted, output_dir=args.output_dir)
    visualize_residuals(ppc['observed'], ppc['predicted_mean'], ppc['residuals'], args.output_dir)

    summary_df = posterior_summary(fitted)
    print("\n=== Posterior Summary ===")
    print(summary_df)
    print("\n=== Prior Summary ===")
    print(prior_summary(fitted))

    country_df, province_df = extract_group_effects(fitted)
    print("\n=== Country Random Intercepts ===")
    print(country_df)
    print("\n=== Province Random Intercepts ===")
    print(province_df)
    visualize_effects(country_df, province_df, args.output_dir)
    save_results(country_df, province_df, summary_df, rhat_df, args.output_dir)

    return fitted, convergence


def main(argv=None):
    """Run the whole analysis."""
    args = parse_args(argv)
    if args.no_show:
        matplotlib.use('Agg')
    os.makedirs(args.output_dir, exist_ok=True)
    setup_logging(os.path.join(args.output_dir, LOG_FILE))

    raw_df = load_wine_reviews(args.data)
    cleaned_df = clean_wine_reviews(raw_df)

    if not args.skip_explore:
        run_exploration(raw_df, cleaned_df, output_dir=args.output_dir)

    model_df = drop_variety(cleaned_df)

    if not args.skip_regularized:
        run_regularized_models(model_df, seed=args.seed, output_dir=args.output_dir)

    if not args.skip_bayesian:
        run_bayesian_analysis(model_df, args)

    logger.info("Analysis complete")


if __name__ == "__main__":
    main()
