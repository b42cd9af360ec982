import logging

import numpy as np
import pandas as pd
import pytest

import bayesian_modeling
from bayesian_modeling import (
    compute_fingerprint,
    load_fitted_model,
    load_or_fit_hierarchical_model,
    prepare_model_data,
    save_fitted_model,
)
from utils_bayesian import posterior_summary


def test_prepare_model_data_nests_provinces_in_countries(model_reviews):
    data, countries, provinces = prepare_model_data(model_reviews)

    assert countries == ['France', 'Italy', 'US']
    assert provinces == ['France:Bordeaux', 'France:Burgundy', 'Italy:Tuscany',
                         'US:California', 'US:Oregon']
    assert data['n_countries'] == 3
    assert data['n_provinces'] == 5
    assert len(data['obs']) == len(model_reviews)
    assert data['log_price_mean'] == pytest.approx(model_reviews['log_price'].mean())

    # every province group maps to exactly one country
    pairs = set(zip(data['province_idx'], data['country_idx']))
    assert len(pairs) == data['n_provinces']


def test_same_province_name_in_two_countries_gives_two_groups():
    df = pd.DataFrame({
        'country': ['A', 'A', 'B', 'B'],
        'province': ['North', 'North', 'North', 'South'],
        'rating_c': [0.0, 1.0, -1.0, 0.0],
        'log_price': [4.0, 5.0, 3.0, 4.5],
    })

    data, _, provinces = prepare_model_data(df)

    assert provinces == ['A:North', 'B:North', 'B:South']
    assert list(data['province_idx']) == [0, 0, 1, 2]


def test_fingerprint_tracks_data(model_reviews):
    assert compute_fingerprint(model_reviews) == compute_fingerprint(model_reviews.copy())
    changed = model_reviews.copy()
    changed['log_price'] = changed['log_price'] + 1.0
    assert compute_fingerprint(changed) != compute_fingerprint(model_reviews)


def test_fit_hierarchical_model_shapes(fitted_model):
    n_countries = len(fitted_model.country_levels)
    n_provinces = len(fitted_model.province_levels)

    assert fitted_model.num_chains == 2
    assert fitted_model.samples['intercept'].shape == (2, 150)
    assert fitted_model.samples['beta_rating'].shape == (2, 150)
    assert fitted_model.samples['country_effect'].shape == (2, 150, n_countries)
    assert fitted_model.samples['province_effect'].shape == (2, 150, n_provinces)
    assert fitted_model.flat_samples()['intercept'].shape == (300,)
    assert (fitted_model.samples['sigma_obs'] > 0).all()
    assert fitted_model.config['num_warmup'] == 150


def test_fit_recovers_positive_rating_slope(fitted_model):
    # synthetic prices double for every 10 rating points
    assert 0.05 < fitted_model.samples['beta_rating'].mean() < 0.15


def test_save_then_load_preserves_posterior_summary(tmp_path, fitted_model):
    path = tmp_path / 'model.pkl'

    save_fitted_model(fitted_model, path)
    reloaded = load_fitted_model(path)

    pd.testing.assert_frame_equal(posterior_summary(fitted_model), posterior_summary(reloaded))
    assert reloaded.country_levels == fitted_model.country_levels
    assert reloaded.fingerprint == fitted_model.fingerprint


def test_cache_miss_fits_and_persists(tmp_path, monkeypatch, model_reviews, fake_fitted):
    path = tmp_path / 'cache' / 'model.pkl'
    calls = []

    def fake_fit(df, **kwargs):
        calls.append(kwargs)
        return fake_fitted

    monkeypatch.setattr(bayesian_modeling, 'fit_hierarchical_model', fake_fit)

    fitted = load_or_fit_hierarchical_model(model_reviews, cache_path=str(path), num_chains=2)

    assert fitted is fake_fitted
    assert calls == [{'num_chains': 2}]
    assert path.exists()


def test_cache_hit_skips_sampling(tmp_path, monkeypatch, model_reviews, fake_fitted):
    path = tmp_path / 'model.pkl'
    save_fitted_model(fake_fitted, path)

    def fail_fit(df, **kwargs):
        raise AssertionError('sampler should not run when a cached model exists')

    monkeypatch.setattr(bayesian_modeling, 'fit_hierarchical_model', fail_fit)

    fitted = load_or_fit_hierarchical_model(model_reviews, cache_path=str(path))

    np.testing.assert_array_equal(fitted.samples['intercept'], fake_fitted.samples['intercept'])


def test_refit_ignores_cache(tmp_path, monkeypatch, model_reviews, fake_fitted):
    path = tmp_path / 'model.pkl'
    save_fitted_model(fake_fitted, path)
    calls = []

    def fake_fit(df, **kwargs):
        calls.append(df)
        return fake_fitted

    monkeypatch.setattr(bayesian_modeling, 'fit_hierarchical_model', fake_fit)

    load_or_fit_hierarchical_model(model_reviews, cache_path=str(path), refit=True)

    assert len(calls) == 1


def test_stale_cache_is_loaded_with_warning(tmp_path, caplog, model_reviews, fake_fitted):
    path = tmp_path / 'model.pkl'
    save_fitted_model(fake_fitted, path)
    changed = model_reviews.iloc[:-1]

    with caplog.at_level(logging.WARNING, logger='bayesian_modeling'):
        fitted = load_or_fit_hierarchical_model(changed, cache_path=str(path))

    assert fitted.fingerprint == fake_fitted.fingerprint
    assert 'different data' in caplog.text
