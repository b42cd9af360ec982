"""
Ridge and lasso regression of log2 price on rating, country and province.

Penalty strength is chosen by k-fold cross-validated mean squared error on the
training split; the selected model is scored on the held-out test split.
"""
import logging
import os
from dataclasses import dataclass

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from sklearn.linear_model import LassoCV, Ridge
from sklearn.metrics import mean_squared_error
from sklearn.model_selection import GridSearchCV, KFold

logger = logging.getLogger(__name__)

# Global configuration settings
RANDOM_SEED = 42
TRAIN_FRACTION = 0.8
CV_FOLDS = 10
PENALTY_GRID = np.logspace(4, -2, 100)  # 10^4 down to 10^-2
PENALTY_TYPES = ('ridge', 'lasso')
RESPONSE_COLUMN = 'log_price'
MAX_LASSO_ITER = 10000
COEF_TOLERANCE = 0.0  # Coefficients with |coef| > tolerance count as selected


@dataclass(frozen=True)
class FittedRegularizedModel:
    """Cross-validated ridge or lasso fit, immutable after creation."""
    penalty: str
    alpha: float
    estimator: object
    feature_names: tuple
    cv_results: pd.DataFrame
    test_mse: float

    @property
    def intercept(self):
        return float(self.estimator.intercept_)

    @property
    def coefficients(self):
        """Coefficients indexed by design matrix column (intercept excluded)."""
        return pd.Series(np.ravel(self.estimator.coef_), index=list(self.feature_names))

    @property
    def selected_features(self):
        coefs = self.coefficients
        return coefs[coefs.abs() > COEF_TOLERANCE]

    @property
    def n_selected(self):
        return len(self.selected_features)

    def predict(self, X):
        X = align_design_matrix(X, self.feature_names)
        return self.estimator.predict(X)


def build_design_matrix(df, columns=None):
    """
    Build the numeric design matrix: rating_c plus dummy-coded country and province.

    One reference level per categorical is dropped. If columns is given, the
    result is reindexed to exactly those columns so a fitted model can be
    reused on new data.

    Args:
        df: Cleaned DataFrame
        columns: Optional fixed column list from an earlier build

    Returns:
        DataFrame of floats
    """
    dummies = pd.get_dummies(df[['country', 'province']], drop_first=True, dtype=float)
    X = pd.concat([df[['rating_c']].astype(float), dummies], axis=1)
    X.columns = X.columns.astype(str)
    if columns is not None:
        X = align_design_matrix(X, columns)
    return X


def align_design_matrix(X, columns):
    """Reindex a design matrix to a fixed column list, filling absent dummies with 0."""
    return X.reindex(columns=list(columns), fill_value=0.0)


def split_train_test(n_rows, train_fraction=TRAIN_FRACTION, seed=RANDOM_SEED):
    """
    Draw a reproducible train/test split of row positions.

    Args:
        n_rows: Number of rows in the full dataset
        train_fraction: Fraction of rows used for training
        seed: Random seed

    Returns:
        Tuple of (train_idx, test_idx) sorted integer arrays
    """
    rng = np.random.RandomState(seed)
    train_idx = rng.choice(np.arange(n_rows), size=int(n_rows * train_fraction), replace=False)
    test_idx = np.setdiff1d(np.arange(n_rows), train_idx)
    return np.sort(train_idx), test_idx


def _make_folds(seed):
    return KFold(n_splits=CV_FOLDS, shuffle=True, random_state=seed)


def _fit_lasso(X_train, y_train, alphas, seed):
    """Lasso over the penalty path with coordinate descent."""
    model = LassoCV(alphas=alphas, cv=_make_folds(seed), max_iter=MAX_LASSO_ITER,
                    random_state=seed)
    model.fit(X_train, y_train)
    # mse_path_ is 1-d when the grid has a single alpha
    mse = np.asarray(model.mse_path_).reshape(len(model.alphas_), -1)
    cv_results = pd.DataFrame({
        'alpha': model.alphas_,
        'mean_cv_mse': mse.mean(axis=1),
        'std_cv_mse': mse.std(axis=1),
    })
    return model, float(model.alpha_), cv_results


def _fit_ridge(X_train, y_train, alphas, seed):
    """Ridge over the penalty grid with a grid search."""
    search = GridSearchCV(Ridge(), {'alpha': list(alphas)}, cv=_make_folds(seed),
                          scoring='neg_mean_squared_error')
    search.fit(X_train, y_train)
    cv_results = pd.DataFrame({
        'alpha': np.asarray(search.cv_results_['param_alpha'], dtype=float),
        'mean_cv_mse': -search.cv_results_['mean_test_score'],
        'std_cv_mse': search.cv_results_['std_test_score'],
    })
    return search.best_estimator_, float(search.best_params_['alpha']), cv_results


def fit_regularized_model(penalty, X_train, y_train, X_test, y_test,
                          alphas=PENALTY_GRID, seed=RANDOM_SEED):
    """
    Fit a cross-validated ridge or lasso model and score it on the test split.

    Args:
        penalty: 'ridge' or 'lasso'
        X_train, y_train: Training design matrix and response
        X_test, y_test: Test design matrix and response
        alphas: Candidate penalty strengths
        seed: Seed for the fold assignment

    Returns:
        FittedRegularizedModel
    """
    if penalty == 'lasso':
        estimator, alpha, cv_results = _fit_lasso(X_train, y_train, alphas, seed)
    elif penalty == 'ridge':
        estimator, alpha, cv_results = _fit_ridge(X_train, y_train, alphas, seed)
    else:
        raise ValueError(f"Unknown penalty type: {penalty!r} (expected one of {PENALTY_TYPES})")

    X_test = align_design_matrix(X_test, X_train.columns)
    test_mse = mean_squared_error(y_test, estimator.predict(X_test))
    logger.info(f"{penalty}: best alpha={alpha:.4g}, test MSE={test_mse:.4f}")

    return FittedRegularizedModel(
        penalty=penalty,
        alpha=alpha,
        estimator=estimator,
        feature_names=tuple(X_train.columns),
        cv_results=cv_results.sort_values('alpha', ascending=False).reset_index(drop=True),
        test_mse=float(test_mse),
    )


def plot_cv_curve(fitted, output_dir=None):
    """Plot mean cross-validated MSE against log10(alpha) with the selected alpha marked."""
    cv = fitted.cv_results
    plt.figure(figsize=(10, 6))
    plt.errorbar(np.log10(cv['alpha']), cv['mean_cv_mse'], yerr=cv['std_cv_mse'],
                 fmt='o', markersize=3, color='red', ecolor='lightgray')
    plt.axvline(np.log10(fitted.alpha), color='gray', linestyle='--', alpha=0.7)
    plt.xlabel('log10(alpha)')
    plt.ylabel('Mean Squared Error (CV)')
    plt.title(f'{fitted.penalty.capitalize()} Cross-Validation Curve')
    plt.grid(True, alpha=0.3)
    plt.tight_layout()

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        plt.savefig(os.path.join(output_dir, f'{fitted.penalty}_cv_curve.png'),
                    dpi=300, bbox_inches='tight')
    plt.show()
    plt.close()


def run_regularized_models(df, alphas=PENALTY_GRID, seed=RANDOM_SEED, output_dir=None):
    """
    Fit ridge and lasso on a seeded 80/20 split and print the results.

    Args:
        df: Cleaned DataFrame (variety may be dropped)
        alphas: Candidate penalty strengths
        seed: Seed for the split and the folds
        output_dir: Directory to save the CV curve plots

    Returns:
        Dictionary mapping penalty type to FittedRegularizedModel
    """
    X = build_design_matrix(df)
    y = df[RESPONSE_COLUMN].to_numpy()
    train_idx, test_idx = split_train_test(len(df), seed=seed)
    X_train, X_test = X.iloc[train_idx], X.iloc[test_idx]
    y_train, y_test = y[train_idx], y[test_idx]
    print(f"Design matrix: {X.shape[0]} rows x {X.shape[1]} columns "
          f"(train={len(train_idx)}, test={len(test_idx)})")

    results = {}
    for penalty in PENALTY_TYPES:
        fitted = fit_regularized_model(penalty, X_train, y_train, X_test, y_test,
                                       alphas=alphas, seed=seed)
        results[penalty] = fitted
        print(f"\n=== {penalty.capitalize()} Regression ===")
        print(f"Best alpha: {fitted.alpha:.6g}")
        print(f"Test MSE: {fitted.test_mse:.4f}")
        plot_cv_curve(fitted, output_dir)

    lasso = results['lasso']
    print(f"\nLasso selected {lasso.n_selected} of {len(lasso.feature_names)} coefficients:")
    print(lasso.selected_features.sort_values(ascending=False))
    return results
