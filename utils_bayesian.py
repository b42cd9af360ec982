"""utils_bayesian.py: Diagnostics and reporting utilities for the hierarchical wine price model."""
import logging
import os
import pickle
import warnings

import jax
import numpyro
from numpyro.infer import Predictive

import pandas as pd
import matplotlib.pyplot as plt
from matplotlib.ticker import FuncFormatter
import numpy as np
import seaborn as sns

from scipy import stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from bayesian_modeling import PARAMETER_SITES, to_model_inputs, wine_price_model

logger = logging.getLogger(__name__)

# Constants
R_HAT_THRESHOLD = 1.05  # Upper bound for acceptable R-hat
R_HAT_LOWER = 0.99  # R-hat below this is reported only
ESS_THRESHOLD = 300  # Threshold for effective sample size
SUMMARY_QUANTILES = (5, 50, 95)
TRACE_SITES = ['intercept', 'beta_rating', 'sigma_country', 'sigma_province', 'sigma_obs']
TRACE_GROUP_EFFECTS = 3  # Number of country/province intercepts shown in trace plots
PPC_NUM_DRAWS = 200  # Posterior draws used for the posterior predictive check
PPC_OVERLAY_DRAWS = 50  # Replicated datasets drawn in the density overlay
PPC_SEED = 0
DEFAULT_HIST_BINS = 30
PPC_TEST_STATISTICS = {
    'mean': np.mean,
    'sd': np.std,
    'min': np.min,
    'max': np.max,
}
PRICE_RATIO_MARKERS = (0.5, 1, 2)  # Observed/predicted ratios marked on the residual plot
PRICE_FACTORS = (1.25, 2)


class ConvergenceWarning(UserWarning):
    """Raised when MCMC diagnostics fall outside the acceptable range."""


def _element_labels(fitted, site, size):
    """Human-readable labels for each element of a parameter site."""
    if site == 'country_effect':
        return [f"{site}[{level}]" for level in fitted.country_levels]
    if site == 'province_effect':
        return [f"{site}[{level}]" for level in fitted.province_levels]
    if size == 1:
        return [site]
    return [f"{site}[{i}]" for i in range(size)]


def iter_parameter_draws(fitted, sites=PARAMETER_SITES):
    """
    Yield (label, draws) for every scalar element of the requested sites.

    Args:
        fitted: FittedHierarchicalModel
        sites: Parameter site names

    Yields:
        Tuple of label and array of shape (chains, draws)
    """
    for site in sites:
        values = np.asarray(fitted.samples[site])
        n_chains, n_draws = values.shape[:2]
        flat = values.reshape(n_chains, n_draws, -1)
        labels = _element_labels(fitted, site, flat.shape[2])
        for i, label in enumerate(labels):
            yield label, flat[:, :, i]


def _can_analyze_parameter(param_samples):
    """Check if parameter can be analyzed for convergence."""
    if param_samples.shape[1] < 4:
        return False
    if np.all(param_samples == param_samples[0, 0]):
        return False
    return True


def compute_rhat(fitted, sites=PARAMETER_SITES):
    """
    Compute split R-hat and effective sample size for every parameter element.

    Args:
        fitted: FittedHierarchicalModel
        sites: Parameter site names

    Returns:
        DataFrame with columns parameter, r_hat, n_eff
    """
    rows = []
    for label, draws in iter_parameter_draws(fitted, sites):
        if not _can_analyze_parameter(draws):
            logger.info(f"Skipping R-hat/ESS for {label} (constant or too few draws)")
            continue
        rows.append({
            'parameter': label,
            'r_hat': float(numpyro.diagnostics.split_gelman_rubin(draws)),
            'n_eff': float(numpyro.diagnostics.effective_sample_size(draws)),
        })
    return pd.DataFrame(rows, columns=['parameter', 'r_hat', 'n_eff'])


def summarize_rhat(rhat_df):
    """Min, median and max R-hat over all parameters."""
    return pd.Series({
        'min': rhat_df['r_hat'].min(),
        'median': rhat_df['r_hat'].median(),
        'max': rhat_df['r_hat'].max(),
    })


def check_convergence(rhat_df, threshold_rhat=R_HAT_THRESHOLD, threshold_ess=ESS_THRESHOLD):
    """
    Check MCMC convergence from per-parameter R-hat and ESS values.

    Convergence fails when any R-hat exceeds threshold_rhat, which emits a
    ConvergenceWarning. Values below R_HAT_LOWER and low ESS are reported but
    do not affect the verdict: split R-hat dips under 1 for well-mixed chains.

    Args:
        rhat_df: DataFrame as returned by compute_rhat
        threshold_rhat: Upper bound for R-hat
        threshold_ess: Threshold for effective sample size

    Returns:
        Dictionary with convergence diagnostics
    """
    too_high = rhat_df['r_hat'] > threshold_rhat
    too_low = rhat_df['r_hat'] < R_HAT_LOWER
    rhat_violations = dict(zip(rhat_df.loc[too_high, 'parameter'],
                               rhat_df.loc[too_high, 'r_hat']))
    rhat_below_lower = dict(zip(rhat_df.loc[too_low, 'parameter'],
                                rhat_df.loc[too_low, 'r_hat']))
    low_ess = rhat_df['n_eff'] < threshold_ess
    ess_violations = dict(zip(rhat_df.loc[low_ess, 'parameter'], rhat_df.loc[low_ess, 'n_eff']))
    summary = summarize_rhat(rhat_df)

    _print_convergence_summary(threshold_rhat, threshold_ess, summary,
                               rhat_violations, rhat_below_lower, ess_violations)

    converged = len(rhat_violations) == 0
    if not converged:
        warnings.warn(
            f"{len(rhat_violations)} parameters have R-hat above {threshold_rhat} "
            f"(max {summary['max']:.3f})",
            ConvergenceWarning
        )

    return {
        'converged': converged,
        'rhat_summary': summary,
        'rhat_violations': rhat_violations,
        'rhat_below_lower': rhat_below_lower,
        'ess_violations': ess_violations,
    }


def _print_convergence_summary(threshold_rhat, threshold_ess, summary,
                               rhat_violations, rhat_below_lower, ess_violations):
    """Print summary of convergence diagnostics."""
    print("\n=== MCMC Convergence Diagnostics ===")
    print(f"R-hat: min={summary['min']:.4f}, median={summary['median']:.4f}, "
          f"max={summary['max']:.4f}")
    print(f"R-hat threshold: {threshold_rhat}")
    print(f"ESS threshold: {threshold_ess}")

    if not rhat_violations:
        print("✓ All parameters have R-hat below threshold (good convergence).")
    else:
        print(f"✗ {len(rhat_violations)} parameters have R-hat above threshold:")
        for p, r in rhat_violations.items():
            print(f"  - {p}: {r:.4f}")

    if rhat_below_lower:
        print(f"Note: {len(rhat_below_lower)} parameters have R-hat below {R_HAT_LOWER} "
              "(not counted against convergence)")

    if not ess_violations:
        print("✓ All parameters have ESS > threshold (good sampling).")
    else:
        print(f"✗ {len(ess_violations)} parameters have ESS < threshold:")
        for p, v in ess_violations.items():
            print(f"  - {p}: {v:.1f}")


def _save_plot(output_dir, filename, dpi=300):
    """Save plot to specified directory."""
    if not os.path.exists(output_dir):
        os.makedirs(output_dir)
    plt.savefig(os.path.join(output_dir, filename), dpi=dpi, bbox_inches='tight')


def plot_traces(fitted, n_group_effects=TRACE_GROUP_EFFECTS, output_dir=None):
    """
    Plot per-chain traces for the global parameters and a few random intercepts.

    Args:
        fitted: FittedHierarchicalModel
        n_group_effects: Number of country and province intercepts to include
        output_dir: Directory to save plot
    """
    draws = dict(iter_parameter_draws(fitted, TRACE_SITES))
    group_draws = dict(iter_parameter_draws(fitted, ['country_effect', 'province_effect']))
    countries = [label for label in group_draws if label.startswith('country_effect')]
    provinces = [label for label in group_draws if label.startswith('province_effect')]
    for label in countries[:n_group_effects] + provinces[:n_group_effects]:
        draws[label] = group_draws[label]

    n_panels = len(draws)
    plt.figure(figsize=(12, 2.2 * n_panels))
    for i, (label, chains) in enumerate(draws.items(), start=1):
        plt.subplot(n_panels, 1, i)
        for chain_id, chain in enumerate(chains):
            plt.plot(chain, linewidth=0.5, alpha=0.7, label=f'chain {chain_id}')
        plt.ylabel(label, fontsize=8)
        if i == 1:
            plt.legend(loc='upper right', fontsize=7, ncol=len(chains))
    plt.xlabel('Draw')
    plt.suptitle('MCMC Trace Plots', fontsize=14)
    plt.tight_layout()

    if output_dir:
        _save_plot(output_dir, 'trace_plots.png')
    plt.show()
    plt.close()


def posterior_predictive_check(fitted, num_draws=PPC_NUM_DRAWS, seed=PPC_SEED, output_dir=None):
    """
    Simulate replicated log prices from the posterior and compare them to the observations.

    Besides per-review posterior predictive p-values, each replicated dataset
    is reduced to the statistics in PPC_TEST_STATISTICS and compared with the
    same statistic of the observed prices.

    Args:
        fitted: FittedHierarchicalModel
        num_draws: Number of posterior draws to simulate from
        seed: Seed for draw selection and simulation
        output_dir: Directory to save plots

    Returns:
        Dictionary with observed values, replicated draws (num_draws x n_obs),
        predictive mean, residuals, posterior predictive p-values and the
        p-value of each test statistic
    """
    flat = fitted.flat_samples()
    total = next(iter(flat.values())).shape[0]
    rng = np.random.RandomState(seed)
    chosen = np.sort(rng.choice(total, size=min(num_draws, total), replace=False))
    posterior_samples = {name: values[chosen] for name, values in flat.items()}

    predictive = Predictive(wine_price_model, posterior_samples, return_sites=["obs"])
    prediction_data = {k: v for k, v in to_model_inputs(fitted.data).items() if k != 'obs'}
    predictions = predictive(jax.random.PRNGKey(seed), **prediction_data)

    y_obs = np.asarray(fitted.data['obs'])
    y_rep = np.asarray(predictions['obs'])
    y_pred_mean = y_rep.mean(axis=0)
    residuals = y_obs - y_pred_mean
    ppp_values = np.mean(y_rep > y_obs, axis=0)
    stat_pvalues = {
        name: float(np.mean(statistic(y_rep, axis=1) >= statistic(y_obs)))
        for name, statistic in PPC_TEST_STATISTICS.items()
    }

    _plot_density_overlay(y_obs, y_rep, output_dir)
    _create_posterior_predictive_plots(y_obs, y_rep, y_pred_mean, ppp_values, output_dir)
    _print_predictive_summary(residuals, ppp_values, stat_pvalues)

    return {
        'observed': y_obs,
        'replicated': y_rep,
        'predicted_mean': y_pred_mean,
        'residuals': residuals,
        'ppp_values': ppp_values,
        'stat_pvalues': stat_pvalues,
    }


def _plot_density_overlay(y_obs, y_rep, output_dir):
    """Overlay densities of replicated datasets on the observed density."""
    plt.figure(figsize=(10, 6))
    for i in range(min(PPC_OVERLAY_DRAWS, y_rep.shape[0])):
        sns.kdeplot(y_rep[i], color='lightblue', alpha=0.3, linewidth=0.7)
    sns.kdeplot(y_obs, color='black', linewidth=2, label='Observed')
    plt.plot([], [], color='lightblue', label='Replicated')
    plt.xlabel('log2(Price)')
    plt.ylabel('Density')
    plt.title('Posterior Predictive Check')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()

    if output_dir:
        _save_plot(output_dir, 'posterior_predictive_density.png')
    plt.show()
    plt.close()


def _set_price_axis(axis='x'):
    """Log2-scaled axis labelled in dollars."""
    formatter = FuncFormatter(lambda v, _: f'${v:,.0f}')
    if axis == 'x':
        plt.xscale('log', base=2)
        plt.gca().xaxis.set_major_formatter(formatter)
    else:
        plt.yscale('log', base=2)
        plt.gca().yaxis.set_major_formatter(formatter)


def _create_posterior_predictive_plots(y_obs, y_rep, y_pred_mean, ppp_values, output_dir):
    """Observed vs predicted prices, replicated test statistics and PPP values."""
    plt.figure(figsize=(12, 8))

    plt.subplot(2, 2, 1)
    price_obs, price_pred = 2 ** y_obs, 2 ** y_pred_mean
    plt.scatter(price_obs, price_pred, alpha=0.5)
    lims = [min(price_obs.min(), price_pred.min()), max(price_obs.max(), price_pred.max())]
    plt.plot(lims, lims, 'k--')
    _set_price_axis('x')
    _set_price_axis('y')
    plt.xlabel('Observed price')
    plt.ylabel('Predicted price (posterior mean)')
    plt.title('Observed vs Predicted Price')
    plt.grid(True, alpha=0.3)

    # Replicated mean and spread of log2 price against the observed values
    for position, name in [(2, 'mean'), (3, 'sd')]:
        statistic = PPC_TEST_STATISTICS[name]
        plt.subplot(2, 2, position)
        plt.hist(statistic(y_rep, axis=1), bins=DEFAULT_HIST_BINS, alpha=0.7, color='lightblue')
        plt.axvline(statistic(y_obs), color='k', linewidth=2, label='Observed')
        plt.xlabel(f'{name} of log2(Price)')
        plt.ylabel('Replicated datasets')
        plt.title(f'Replicated {name} of log2(Price)')
        plt.legend()
        plt.grid(True, alpha=0.3)

    plt.subplot(2, 2, 4)
    plt.hist(ppp_values, bins=20)
    plt.axvline(0.5, color='r', linestyle='--')
    plt.xlabel('Posterior predictive p-value')
    plt.ylabel('Reviews')
    plt.title('Per-review p-values (ideal: centered at 0.5)')
    plt.grid(True, alpha=0.3)

    plt.tight_layout()

    if output_dir:
        _save_plot(output_dir, 'posterior_predictive_check.png')
    plt.show()
    plt.close()


def _print_predictive_summary(residuals, ppp_values, stat_pvalues):
    """Print predictive accuracy in log2 units and as a price factor."""
    mae = np.mean(np.abs(residuals))
    print("\n=== Posterior Predictive Check Summary ===")
    print(f"Mean absolute error: {mae:.4f} log2 units "
          f"(typical price off by a factor of {2 ** mae:.2f})")
    print(f"Root mean squared error: {np.sqrt(np.mean(residuals ** 2)):.4f}")
    print(f"Mean of per-review PPP values: {np.mean(ppp_values):.4f} (ideal: 0.5)")
    for name, p in stat_pvalues.items():
        print(f"p-value of replicated {name}: {p:.3f}")


def visualize_residuals(observed, predicted, residuals, output_dir=None):
    """
    Visualize log2 price residuals.

    Residuals are differences of log2 prices, so 2**residual is the ratio of
    observed to predicted price.

    Args:
        observed: Observed log2 prices
        predicted: Predicted log2 prices
        residuals: Residuals (observed - predicted)
        output_dir: Directory to save plots
    """
    predicted = np.asarray(predicted)
    residuals = np.asarray(residuals)
    plt.figure(figsize=(16, 10))

    plt.subplot(2, 2, 1)
    plt.scatter(2 ** predicted, residuals, alpha=0.5)
    plt.axhline(y=0, color='r', linestyle='--')
    _add_lowess_smoother(predicted, residuals)
    _set_price_axis('x')
    plt.xlabel('Predicted price')
    plt.ylabel('Residual (log2)')
    plt.title('Residuals vs Predicted Price')
    plt.grid(True, alpha=0.3)

    plt.subplot(2, 2, 2)
    plt.hist(residuals, bins=DEFAULT_HIST_BINS, alpha=0.7, color='blue', density=True)
    x = np.linspace(residuals.min(), residuals.max(), 100)
    plt.plot(x, stats.norm.pdf(x, residuals.mean(), residuals.std()), 'r-', linewidth=2)
    plt.xlabel('Residual (log2)')
    plt.ylabel('Density')
    plt.title('Distribution of Residuals')
    plt.grid(True, alpha=0.3)

    plt.subplot(2, 2, 3)
    stats.probplot(residuals, dist="norm", plot=plt)
    plt.title('Q-Q Plot')
    plt.grid(True, alpha=0.3)

    plt.subplot(2, 2, 4)
    plt.hist(2 ** residuals, bins=np.logspace(residuals.min(), residuals.max(),
                                              DEFAULT_HIST_BINS, base=2),
             alpha=0.7, color='seagreen')
    for ratio in PRICE_RATIO_MARKERS:
        plt.axvline(ratio, color='gray', linestyle='--', alpha=0.7)
    plt.xscale('log', base=2)
    plt.xlabel('Observed / predicted price')
    plt.ylabel('Reviews')
    plt.title('Price Ratio')
    plt.grid(True, alpha=0.3)

    plt.tight_layout()

    if output_dir:
        _save_plot(output_dir, 'residual_diagnostics.png')
    plt.show()
    plt.close()

    _print_residual_diagnostics(observed, residuals)


def _add_lowess_smoother(x, y):
    """Add a LOWESS smoother fitted on log2 price, drawn on the dollar axis."""
    smooth = lowess(y, x, frac=0.2)
    plt.plot(2 ** smooth[:, 0], smooth[:, 1], 'r-', linewidth=2)


def _print_residual_diagnostics(observed, residuals):
    """Print residual statistics and how often the price is within a factor."""
    print("\n=== Residual Diagnostics ===")
    print(f"Mean of residuals: {np.mean(residuals):.4f}")
    print(f"Std of residuals: {np.std(residuals):.4f}")
    print(f"Share of log2 price variance explained: "
          f"{1 - np.var(residuals) / np.var(observed):.3f}")
    print(f"Median observed/predicted price ratio: {2 ** np.median(residuals):.3f}")
    for factor in PRICE_FACTORS:
        share = np.mean(np.abs(residuals) <= np.log2(factor))
        print(f"Prices within a factor of {factor}: {share:.1%}")

    # Shapiro-Wilk has a sample size limit
    if 3 <= len(residuals) <= 5000:
        stat, p = stats.shapiro(residuals)
        print(f"Shapiro-Wilk test: stat={stat:.4f}, p-value={p:.4f}")


def posterior_summary(fitted, quantiles=SUMMARY_QUANTILES, sites=PARAMETER_SITES):
    """
    Point estimates and credible intervals for every parameter element.

    Args:
        fitted: FittedHierarchicalModel
        quantiles: Percentiles to report
        sites: Parameter site names

    Returns:
        DataFrame indexed by parameter with mean, sd, percentile columns and r_hat
    """
    rows = {}
    for label, draws in iter_parameter_draws(fitted, sites):
        flat = draws.reshape(-1)
        row = {'mean': flat.mean(), 'sd': flat.std(ddof=1)}
        for q, value in zip(quantiles, np.percentile(flat, quantiles)):
            row[f'{q}%'] = value
        row['r_hat'] = (float(numpyro.diagnostics.split_gelman_rubin(draws))
                        if _can_analyze_parameter(draws) else np.nan)
        rows[label] = row
    summary = pd.DataFrame.from_dict(rows, orient='index')
    summary.index.name = 'parameter'
    return summary


def prior_summary(fitted):
    """Table of the priors the model was fitted with."""
    rows = []
    for parameter, (distribution, params) in fitted.priors.items():
        rows.append({
            'parameter': parameter,
            'distribution': distribution,
            'loc': params.get('loc'),
            'scale': params.get('scale'),
        })
    return pd.DataFrame(rows)


def extract_group_effects(fitted, quantiles=(5, 95)):
    """
    Posterior mean random intercept for every country and every province group.

    Args:
        fitted: FittedHierarchicalModel
        quantiles: Lower and upper percentiles for the interval columns

    Returns:
        Tuple of (country DataFrame, province DataFrame), each with columns
        category, effect, lower, upper and sorted ascending by effect
    """
    country_df = _group_effect_dataframe(fitted.samples['country_effect'],
                                         fitted.country_levels, quantiles)
    province_df = _group_effect_dataframe(fitted.samples['province_effect'],
                                          fitted.province_levels, quantiles)
    return country_df, province_df


def _group_effect_dataframe(values, levels, quantiles):
    """Summarize draws of shape (chains, draws, n_levels) per level."""
    flat = np.asarray(values).reshape(-1, len(levels))
    lower, upper = np.percentile(flat, quantiles, axis=0)
    return pd.DataFrame({
        'category': levels,
        'effect': flat.mean(axis=0),
        'lower': lower,
        'upper': upper,
    }).sort_values('effect', ascending=True).reset_index(drop=True)


def plot_ranked_effects(effects_df, title, color, output_dir=None, filename=None):
    """
    Ranked scatter plot of random intercepts with their credible intervals.

    Args:
        effects_df: DataFrame from extract_group_effects
        title: Plot title
        color: Marker color
        output_dir: Directory to save plot
        filename: File name of the saved plot
    """
    df_sorted = effects_df.sort_values('effect', ascending=True)
    positions = np.arange(len(df_sorted))

    plt.figure(figsize=(10, len(df_sorted) * 0.25 + 2))
    plt.hlines(positions, df_sorted['lower'], df_sorted['upper'], color='lightgray')
    plt.scatter(df_sorted['effect'], positions, color=color, zorder=3)
    plt.yticks(positions, df_sorted['category'], fontsize=7)
    plt.axvline(x=0, color='gray', linestyle='--', alpha=0.7)
    plt.title(title, fontsize=14)
    plt.xlabel('Random intercept (log2 price)')
    plt.tight_layout()

    if output_dir:
        _save_plot(output_dir, filename)
    plt.show()
    plt.close()


def visualize_effects(country_df, province_df, output_dir=None):
    """Plot ranked country and province random intercepts."""
    plt.style.use('seaborn-v0_8-whitegrid')
    if country_df is not None and not country_df.empty:
        plot_ranked_effects(country_df, 'Country Random Intercepts', 'salmon',
                            output_dir, filename='country_effects.png')
    if province_df is not None and not province_df.empty:
        plot_ranked_effects(province_df, 'Province (within Country) Random Intercepts',
                            'mediumpurple', output_dir, filename='province_effects.png')


def save_results(country_df, province_df, summary_df, rhat_df, output_dir):
    """
    Save analysis results to CSV files and the effects to a pickle.

    Args:
        country_df: DataFrame with country effects
        province_df: DataFrame with province effects
        summary_df: Posterior summary DataFrame
        rhat_df: R-hat DataFrame
        output_dir: Directory to save results
    """
    if not os.path.exists(output_dir):
        os.makedirs(output_dir)

    country_df.to_csv(os.path.join(output_dir, 'country_effects.csv'), index=False)
    province_df.to_csv(os.path.join(output_dir, 'province_effects.csv'), index=False)
    summary_df.to_csv(os.path.join(output_dir, 'posterior_summary.csv'))
    rhat_df.to_csv(os.path.join(output_dir, 'rhat.csv'), index=False)

    pickle_path = os.path.join(output_dir, 'group_effects.pkl')
    with open(pickle_path, 'wb') as f:
        pickle.dump({'country': country_df, 'province': province_df}, f)

    print(f"Results saved to {output_dir}")
