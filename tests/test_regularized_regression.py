import numpy as np
import pytest

from regularized_regression import (
    PENALTY_GRID,
    build_design_matrix,
    fit_regularized_model,
    run_regularized_models,
    split_train_test,
)

SMALL_GRID = np.logspace(2, -2, 9)


def _split(df, seed=42):
    X = build_design_matrix(df)
    y = df['log_price'].to_numpy()
    train_idx, test_idx = split_train_test(len(df), seed=seed)
    return X.iloc[train_idx], y[train_idx], X.iloc[test_idx], y[test_idx]


def test_penalty_grid():
    assert len(PENALTY_GRID) == 100
    assert PENALTY_GRID[0] == pytest.approx(1e4)
    assert PENALTY_GRID[-1] == pytest.approx(1e-2)
    assert np.all(np.diff(PENALTY_GRID) < 0)


def test_design_matrix_drops_one_reference_level(model_reviews):
    X = build_design_matrix(model_reviews)

    n_countries = model_reviews['country'].nunique()
    n_provinces = model_reviews['province'].nunique()
    assert X.columns[0] == 'rating_c'
    assert X.shape == (len(model_reviews), 1 + (n_countries - 1) + (n_provinces - 1))
    assert 'country_France' not in X.columns  # alphabetical reference level
    assert 'country_US' in X.columns


def test_design_matrix_reuses_fixed_columns(model_reviews):
    columns = build_design_matrix(model_reviews).columns
    subset = model_reviews[model_reviews['country'] == 'Italy']

    X_subset = build_design_matrix(subset, columns=columns)

    assert list(X_subset.columns) == list(columns)
    assert (X_subset['country_US'] == 0).all()
    assert (X_subset['country_Italy'] == 1).all()


def test_split_sizes_and_disjointness():
    train_idx, test_idx = split_train_test(92)

    assert len(train_idx) + len(test_idx) == 92
    assert len(test_idx) == 92 - int(92 * 0.8)
    assert abs(len(test_idx) - round(0.2 * 92)) <= 1
    assert not set(train_idx) & set(test_idx)
    assert set(train_idx) | set(test_idx) == set(range(92))


def test_split_is_deterministic_for_a_seed():
    first = split_train_test(500, seed=42)
    second = split_train_test(500, seed=42)
    other = split_train_test(500, seed=7)

    np.testing.assert_array_equal(first[0], second[0])
    np.testing.assert_array_equal(first[1], second[1])
    assert not np.array_equal(first[0], other[0])


@pytest.mark.parametrize('penalty', ['ridge', 'lasso'])
def test_fits_are_reproducible(model_reviews, penalty):
    data = _split(model_reviews)

    first = fit_regularized_model(penalty, *data, alphas=SMALL_GRID)
    second = fit_regularized_model(penalty, *data, alphas=SMALL_GRID)

    assert first.alpha == second.alpha
    assert first.test_mse == second.test_mse
    assert first.alpha in SMALL_GRID
    assert len(first.cv_results) == len(SMALL_GRID)


def test_selected_alpha_minimizes_cv_error(model_reviews):
    fitted = fit_regularized_model('ridge', *_split(model_reviews), alphas=SMALL_GRID)

    best = fitted.cv_results.loc[fitted.cv_results['mean_cv_mse'].idxmin(), 'alpha']
    assert fitted.alpha == pytest.approx(best)


def test_large_lasso_penalty_zeroes_all_coefficients(model_reviews):
    X_train, y_train, X_test, y_test = _split(model_reviews)

    fitted = fit_regularized_model('lasso', X_train, y_train, X_test, y_test, alphas=[1e4])

    assert fitted.n_selected == 0
    assert fitted.selected_features.empty
    np.testing.assert_allclose(fitted.predict(X_test), fitted.intercept)
    assert fitted.intercept == pytest.approx(y_train.mean())


def test_single_alpha_lasso_reports_cv_error(model_reviews):
    fitted = fit_regularized_model('lasso', *_split(model_reviews), alphas=[1e4])

    assert list(fitted.cv_results['alpha']) == [1e4]
    assert fitted.cv_results['mean_cv_mse'].iloc[0] > 0
    assert fitted.cv_results['std_cv_mse'].iloc[0] >= 0
    assert fitted.alpha == 1e4


def test_unknown_penalty_raises(model_reviews):
    with pytest.raises(ValueError, match='elastic'):
        fit_regularized_model('elastic', *_split(model_reviews), alphas=SMALL_GRID)


def test_run_regularized_models(tmp_path, model_reviews):
    results = run_regularized_models(model_reviews, alphas=SMALL_GRID, output_dir=tmp_path)

    assert set(results) == {'ridge', 'lasso'}
    for fitted in results.values():
        assert fitted.test_mse > 0
    assert results['lasso'].n_selected <= len(results['lasso'].feature_names)
    assert (tmp_path / 'ridge_cv_curve.png').exists()
    assert (tmp_path / 'lasso_cv_curve.png').exists()
