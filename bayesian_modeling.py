"""
Hierarchical Bayesian regression of wine prices.

Fits log2(price) on centered rating with random intercepts for country and for
province nested within country, using NumPyro's NUTS sampler. The fitted
posterior is pickled to a fixed path and reloaded on later runs instead of
sampling again.
"""
import hashlib
import logging
import os
import pickle
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist
from numpyro.infer import MCMC, NUTS, init_to_median

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Global configuration settings
OUTPUT_DIR = './wine_analysis_results'
MODEL_CACHE_PATH = os.path.join(OUTPUT_DIR, 'hierarchical_model.pkl')
NUM_CHAINS = 4  # Number of MCMC chains to run in parallel
MCMC_WARMUP_STEPS = 1000
MCMC_SAMPLE_STEPS = 1000  # 2000 iterations per chain including warm-up
RANDOM_SEED = 42
PRIOR_SCALE = 1.0
TARGET_ACCEPT_PROB = 0.8
GROUP_SEPARATOR = ':'
MODEL_COLUMNS = ['country', 'province', 'rating_c', 'log_price']
PARAMETER_SITES = [
    'intercept',
    'beta_rating',
    'sigma_country',
    'sigma_province',
    'sigma_obs',
    'country_effect',
    'province_effect',
]

# Initialize NumPyro with the specified number of chains
numpyro.set_host_device_count(NUM_CHAINS)


@dataclass
class FittedHierarchicalModel:
    """Posterior draws of the hierarchical model plus everything needed to reuse them."""
    samples: dict  # site name -> array of shape (chains, draws, ...)
    country_levels: list
    province_levels: list
    data: dict
    priors: dict
    config: dict
    fingerprint: str = ''

    @property
    def num_chains(self):
        return next(iter(self.samples.values())).shape[0]

    def flat_samples(self):
        """Posterior draws with the chain dimension merged into the draw dimension."""
        return {
            name: values.reshape((-1,) + values.shape[2:])
            for name, values in self.samples.items()
        }


def wine_price_model(rating_c, country_idx, province_idx, n_countries, n_provinces,
                     log_price_mean, obs=None):
    """
    Linear model with nested random intercepts.

    log_price ~ Normal(intercept + beta_rating * rating_c
                       + country_effect[country] + province_effect[country:province],
                       sigma_obs)

    Random intercepts are non-centered: a standard normal draw scaled by the
    group-level standard deviation.
    """
    intercept = numpyro.sample("intercept", dist.Normal(log_price_mean, PRIOR_SCALE))
    beta_rating = numpyro.sample("beta_rating", dist.Normal(0.0, PRIOR_SCALE))

    # Hyperpriors for hierarchical variance
    sigma_country = numpyro.sample("sigma_country", dist.HalfNormal(PRIOR_SCALE))
    sigma_province = numpyro.sample("sigma_province", dist.HalfNormal(PRIOR_SCALE))
    sigma_obs = numpyro.sample("sigma_obs", dist.HalfNormal(PRIOR_SCALE))

    country_raw = numpyro.sample("country_raw", dist.Normal(0.0, 1.0),
                                 sample_shape=(n_countries,))
    province_raw = numpyro.sample("province_raw", dist.Normal(0.0, 1.0),
                                  sample_shape=(n_provinces,))
    country_effect = numpyro.deterministic("country_effect", sigma_country * country_raw)
    province_effect = numpyro.deterministic("province_effect", sigma_province * province_raw)

    mu = (intercept + beta_rating * rating_c
          + country_effect[country_idx] + province_effect[province_idx])
    numpyro.sample("obs", dist.Normal(mu, sigma_obs), obs=obs)


def prepare_model_data(df):
    """
    Encode the cleaned data as arrays for the model.

    Provinces are nested in countries, so each province group is a unique
    'country:province' pair.

    Args:
        df: Cleaned DataFrame with country, province, rating_c and log_price

    Returns:
        Tuple of (data dictionary, country level names, province group names)
    """
    country = pd.Categorical(df['country'].astype(str))
    province_group = pd.Categorical(
        df['country'].astype(str) + GROUP_SEPARATOR + df['province'].astype(str)
    )
    log_price = df['log_price'].to_numpy(dtype=float)

    data = {
        'rating_c': df['rating_c'].to_numpy(dtype=float),
        'country_idx': np.asarray(country.codes, dtype=np.int32),
        'province_idx': np.asarray(province_group.codes, dtype=np.int32),
        'n_countries': len(country.categories),
        'n_provinces': len(province_group.categories),
        'log_price_mean': float(log_price.mean()),
        'obs': log_price,
    }
    return data, list(country.categories), list(province_group.categories)


def model_priors(log_price_mean):
    """Priors used by wine_price_model, for the prior summary."""
    return {
        'intercept': ('Normal', {'loc': log_price_mean, 'scale': PRIOR_SCALE}),
        'beta_rating': ('Normal', {'loc': 0.0, 'scale': PRIOR_SCALE}),
        'sigma_country': ('HalfNormal', {'scale': PRIOR_SCALE}),
        'sigma_province': ('HalfNormal', {'scale': PRIOR_SCALE}),
        'sigma_obs': ('HalfNormal', {'scale': PRIOR_SCALE}),
        'country_effect': ('Normal', {'loc': 0.0, 'scale': 'sigma_country'}),
        'province_effect': ('Normal', {'loc': 0.0, 'scale': 'sigma_province'}),
    }


def to_model_inputs(data):
    """Convert the NumPy data dictionary to JAX arrays (ints and floats stay Python scalars)."""
    return {
        key: jnp.asarray(value) if isinstance(value, np.ndarray) else value
        for key, value in data.items()
    }


def compute_fingerprint(df):
    """Hash of the modelling columns, stored with the cached model."""
    hashed = pd.util.hash_pandas_object(df[MODEL_COLUMNS].astype(str), index=False)
    return hashlib.sha256(hashed.to_numpy().tobytes()).hexdigest()


def _print_model_statistics(data):
    """Print sample and parameter counts for the model."""
    n_obs = len(data['obs'])
    total_params = data['n_countries'] + data['n_provinces'] + 5
    print(f"Sample count: {n_obs}")
    print(f"Unique countries: {data['n_countries']}")
    print(f"Unique country:province groups: {data['n_provinces']}")
    print(f"Total parameters: {total_params}")
    print(f"Sample:Parameter ratio: {n_obs / total_params:.2f}")


def _run_mcmc_inference(model_inputs, num_chains, num_warmup, num_samples, seed,
                        progress_bar=True):
    """
    Run MCMC inference using the NUTS sampler.

    Args:
        model_inputs: Keyword arguments for wine_price_model
        num_chains: Number of chains
        num_warmup: Warm-up steps per chain
        num_samples: Kept draws per chain
        seed: Seed for the sampler
        progress_bar: Show NumPyro's progress bar

    Returns:
        MCMC object with samples
    """
    rng_key = jax.random.PRNGKey(seed)

    nuts_kernel = NUTS(
        wine_price_model,
        adapt_step_size=True,
        target_accept_prob=TARGET_ACCEPT_PROB,
        init_strategy=init_to_median()
    )

    mcmc = MCMC(
        nuts_kernel,
        num_warmup=num_warmup,
        num_samples=num_samples,
        num_chains=num_chains,
        chain_method="parallel",
        progress_bar=progress_bar
    )

    mcmc.run(rng_key, **model_inputs)
    return mcmc


def fit_hierarchical_model(df, num_chains=NUM_CHAINS, num_warmup=MCMC_WARMUP_STEPS,
                           num_samples=MCMC_SAMPLE_STEPS, seed=RANDOM_SEED,
                           progress_bar=True):
    """
    Fit the hierarchical model to the cleaned data.

    Args:
        df: Cleaned DataFrame
        num_chains: Number of MCMC chains
        num_warmup: Warm-up steps per chain
        num_samples: Kept draws per chain
        seed: Sampler seed
        progress_bar: Show NumPyro's progress bar

    Returns:
        FittedHierarchicalModel
    """
    logger.info(f"JAX version: {jax.__version__}, NumPyro version: {numpyro.__version__}")
    data, country_levels, province_levels = prepare_model_data(df)
    _print_model_statistics(data)
    print(f"Using {num_chains} MCMC chains ({jax.local_device_count()} host devices)")

    mcmc = _run_mcmc_inference(to_model_inputs(data), num_chains, num_warmup,
                               num_samples, seed, progress_bar)
    samples = {
        name: np.asarray(values)
        for name, values in mcmc.get_samples(group_by_chain=True).items()
    }

    return FittedHierarchicalModel(
        samples=samples,
        country_levels=country_levels,
        province_levels=province_levels,
        data=data,
        priors=model_priors(data['log_price_mean']),
        config={
            'num_chains': num_chains,
            'num_warmup': num_warmup,
            'num_samples': num_samples,
            'seed': seed,
        },
        fingerprint=compute_fingerprint(df),
    )


def save_fitted_model(fitted, path=MODEL_CACHE_PATH):
    """Pickle a fitted model to path, creating the directory if needed."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'wb') as f:
        pickle.dump(fitted, f)
    logger.info(f"Fitted model saved to {path}")


def load_fitted_model(path=MODEL_CACHE_PATH):
    """Load a pickled fitted model."""
    with open(path, 'rb') as f:
        fitted = pickle.load(f)
    logger.info(f"Fitted model loaded from {path}")
    return fitted


def load_or_fit_hierarchical_model(df, cache_path=MODEL_CACHE_PATH, refit=False, **fit_kwargs):
    """
    Return the cached model if one exists at cache_path, otherwise fit and cache it.

    The cache is keyed by path only. A cached model built from different data
    is still returned; the mismatch is only logged.

    Args:
        df: Cleaned DataFrame
        cache_path: Location of the pickled model
        refit: Ignore an existing artifact and sample again
        **fit_kwargs: Passed to fit_hierarchical_model

    Returns:
        FittedHierarchicalModel
    """
    if os.path.exists(cache_path) and not refit:
        fitted = load_fitted_model(cache_path)
        if fitted.fingerprint and fitted.fingerprint != compute_fingerprint(df):
            logger.warning(f"Cached model at {cache_path} was fitted on different data; "
                           "pass refit=True to resample")
        return fitted

    fitted = fit_hierarchical_model(df, **fit_kwargs)
    save_fitted_model(fitted, cache_path)
    return fitted
