import matplotlib

matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

from bayesian_modeling import (
    FittedHierarchicalModel,
    compute_fingerprint,
    fit_hierarchical_model,
    model_priors,
    prepare_model_data,
)
from utils_cleaning import clean_wine_reviews, drop_variety

# (country, province, rows, base price)
REVIEW_LAYOUT = [
    ('US', 'California', 30, 35.0),
    ('US', 'Oregon', 15, 30.0),
    ('France', 'Bordeaux', 20, 40.0),
    ('France', 'Burgundy', 12, 55.0),
    ('Italy', 'Tuscany', 15, 28.0),
]
VARIETIES = ['Red Blend', 'Chardonnay', 'Pinot Noir']


def make_raw_reviews(seed=0):
    """Synthetic raw review table in the winemag layout."""
    rng = np.random.RandomState(seed)
    rows = []
    for country, province, n_rows, base_price in REVIEW_LAYOUT:
        for _ in range(n_rows):
            rating = int(rng.randint(80, 101))
            price = base_price * 2 ** ((rating - 88) / 10 + rng.normal(0, 0.3))
            rows.append({
                'country': country,
                'description': 'Ripe fruit and firm tannins.',
                'points': rating,
                'price': round(price, 2),
                'province': province,
                'taster_name': 'Anonymous',
                'variety': VARIETIES[rng.randint(len(VARIETIES))],
            })
    return pd.DataFrame(rows)


def make_fake_fitted(df, n_chains=2, n_draws=50, seed=0):
    """FittedHierarchicalModel with independent normal draws, no sampling involved."""
    rng = np.random.RandomState(seed)
    data, country_levels, province_levels = prepare_model_data(df)
    shape = (n_chains, n_draws)
    samples = {
        'intercept': data['log_price_mean'] + 0.1 * rng.normal(size=shape),
        'beta_rating': 0.1 + 0.01 * rng.normal(size=shape),
        'sigma_country': np.abs(0.5 + 0.05 * rng.normal(size=shape)),
        'sigma_province': np.abs(0.3 + 0.05 * rng.normal(size=shape)),
        'sigma_obs': np.abs(0.4 + 0.02 * rng.normal(size=shape)),
        'country_raw': rng.normal(size=shape + (data['n_countries'],)),
        'province_raw': rng.normal(size=shape + (data['n_provinces'],)),
    }
    samples['country_effect'] = samples['sigma_country'][..., None] * samples['country_raw']
    samples['province_effect'] = samples['sigma_province'][..., None] * samples['province_raw']
    return FittedHierarchicalModel(
        samples=samples,
        country_levels=country_levels,
        province_levels=province_levels,
        data=data,
        priors=model_priors(data['log_price_mean']),
        config={'num_chains': n_chains, 'num_warmup': 0, 'num_samples': n_draws, 'seed': seed},
        fingerprint=compute_fingerprint(df),
    )


@pytest.fixture
def raw_reviews():
    return make_raw_reviews()


@pytest.fixture
def cleaned_reviews():
    return clean_wine_reviews(make_raw_reviews())


@pytest.fixture
def model_reviews():
    return drop_variety(clean_wine_reviews(make_raw_reviews()))


@pytest.fixture
def fake_fitted(model_reviews):
    return make_fake_fitted(model_reviews)


@pytest.fixture(scope='session')
def fitted_model():
    df = drop_variety(clean_wine_reviews(make_raw_reviews()))
    return fit_hierarchical_model(df, num_chains=2, num_warmup=150, num_samples=150,
                                  seed=42, progress_bar=False)
