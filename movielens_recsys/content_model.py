import logging

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.linear_model import Ridge
from sklearn.metrics import mean_absolute_error
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder
from sklearn.utils.sparsefuncs import mean_variance_axis

from movielens_recsys import config
from movielens_recsys.exceptions import ModelFitError

logger = logging.getLogger(__name__)

MISSING_LEVEL = "__missing__"


class RedundantColumnDropper(BaseEstimator, TransformerMixin):
    """Drops constant columns and columns identical to an earlier column.

    On one-hot encoded input these are the exactly collinear columns a
    linear solver cannot separate.
    """

    def fit(self, X, y=None):
        X = sparse.csc_matrix(X, dtype=float, copy=True)
        X.sort_indices()
        _, variances = mean_variance_axis(X, axis=0)
        support = variances > 0
        seen = set()
        for j in np.flatnonzero(support):
            start, end = X.indptr[j], X.indptr[j + 1]
            key = (X.indices[start:end].tobytes(), X.data[start:end].tobytes())
            if key in seen:
                support[j] = False
            else:
                seen.add(key)
        if not support.any():
            raise ModelFitError("no predictor column varies in the training data")
        self.support_ = support
        self.n_features_in_ = X.shape[1]
        logger.debug("Dropped %d of %d encoded columns", int((~support).sum()), X.shape[1])
        return self

    def transform(self, X):
        X = sparse.csr_matrix(X, dtype=float)
        if X.shape[1] != self.n_features_in_:
            raise ValueError(f"expected {self.n_features_in_} columns, got {X.shape[1]}")
        return X[:, self.support_]


def _as_levels(df, columns):
    frame = df[columns].astype(object)
    return frame.where(frame.notna(), MISSING_LEVEL).astype(str)


class ContentModel:
    """Ridge-penalised linear model over user, movie and user x genre levels."""

    def __init__(self, feature_columns, target_column="rating", alpha=config.GLM_ALPHA):
        self.feature_columns = list(feature_columns)
        self.target_column = target_column
        self.alpha = alpha
        self.pipeline = None

    def train(self, train_df):
        missing = [c for c in self.feature_columns + [self.target_column] if c not in train_df.columns]
        if missing:
            raise ValueError(f"training frame lacks columns {missing}")
        self.pipeline = Pipeline([
            ("encode", OneHotEncoder(handle_unknown="ignore")),
            ("prune", RedundantColumnDropper()),
            ("glm", Ridge(alpha=self.alpha)),
        ])
        X = _as_levels(train_df, self.feature_columns)
        y = train_df[self.target_column].astype(float).to_numpy()
        self.pipeline.fit(X, y)
        kept = int(self.pipeline.named_steps["prune"].support_.sum())
        logger.info("Fitted GLM on %d rows with %d encoded predictors", len(train_df), kept)
        return self

    def predict(self, df):
        if self.pipeline is None:
            raise RuntimeError("ContentModel is not trained")
        preds = self.pipeline.predict(_as_levels(df, self.feature_columns))
        if not np.all(np.isfinite(preds)):
            raise ModelFitError("linear model produced non-finite predictions")
        return preds

    def evaluate(self, test_df):
        preds = self.predict(test_df)
        return float(mean_absolute_error(test_df[self.target_column].astype(float), preds))

    def coefficients(self):
        encoder = self.pipeline.named_steps["encode"]
        support = self.pipeline.named_steps["prune"].support_
        names = np.asarray([
            f"{col}={level}"
            for col, levels in zip(self.feature_columns, encoder.categories_)
            for level in levels
        ], dtype=object)
        return pd.Series(self.pipeline.named_steps["glm"].coef_, index=names[support])


def fit_linear_model(training_rows, feature_columns, target_column="rating",
                     regularization_strength=config.GLM_ALPHA, evaluation_rows=None):
    """Fit a ContentModel and report its MAE on ``evaluation_rows``.

    Returns ``(model, mae)``; ``mae`` is None when no evaluation rows are given.
    """
    model = ContentModel(feature_columns, target_column=target_column,
                         alpha=regularization_strength).train(training_rows)
    mae = None
    if evaluation_rows is not None:
        mae = model.evaluate(evaluation_rows)
        logger.info("GLM evaluation MAE: %.4f", mae)
    return model, mae
