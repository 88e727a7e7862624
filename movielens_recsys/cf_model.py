import logging
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse
from scipy.sparse.linalg import svds
from sklearn.metrics import mean_squared_error
from sklearn.metrics.pairwise import cosine_similarity

from movielens_recsys import config
from movielens_recsys.config import SweepConfig
from movielens_recsys.exceptions import ModelFitError

logger = logging.getLogger(__name__)

# above this many cells the initial SVD switches from dense LAPACK to ARPACK
DENSE_SVD_LIMIT = 4_000_000


@dataclass(frozen=True)
class RatingMatrix:
    """Sparse user x movie ratings; entries that are not stored are missing."""

    values: sparse.csr_matrix
    user_ids: pd.Index
    movie_ids: pd.Index

    @property
    def shape(self):
        return self.values.shape

    @property
    def n_observed(self):
        return self.values.nnz

    def entries(self):
        coo = self.values.tocoo()
        return pd.DataFrame({
            "user_id": np.asarray(self.user_ids)[coo.row],
            "movie_id": np.asarray(self.movie_ids)[coo.col],
            "rating": coo.data,
        })

    def to_dense(self):
        """Dense copy with NaN in every unobserved cell."""
        coo = self.values.tocoo()
        dense = np.full(self.shape, np.nan)
        dense[coo.row, coo.col] = coo.data
        return dense


def build_rating_matrix(ratings, user_col="user_id", movie_col="movie_id", rating_col="rating"):
    df = ratings[[user_col, movie_col, rating_col]].astype({user_col: object, movie_col: object})
    df = df.dropna()
    # duplicated (user, movie) pairs: the last rating wins
    df = df.drop_duplicates([user_col, movie_col], keep="last")
    user_ids = pd.Index(pd.unique(df[user_col]), name="user_id").sort_values()
    movie_ids = pd.Index(pd.unique(df[movie_col]), name="movie_id").sort_values()
    rows = user_ids.get_indexer(df[user_col])
    cols = movie_ids.get_indexer(df[movie_col])
    values = sparse.csr_matrix(
        (df[rating_col].to_numpy(dtype=float), (rows, cols)),
        shape=(len(user_ids), len(movie_ids)),
    )
    return RatingMatrix(values=values, user_ids=user_ids, movie_ids=movie_ids)


def _ridge_rows(Z, W, F, gamma):
    """Solve min_x |w_r * (z_r - x F)|^2 + gamma |x|^2 for every row r of Z.

    ``Z`` and ``W`` are sparse with the same pattern; only their stored
    cells enter the Gram matrices and right-hand sides.
    """
    k = F.shape[0]
    outer = (F[:, None, :] * F[None, :, :]).reshape(k * k, -1)
    gram = np.asarray(W @ outer.T).reshape(-1, k, k) + gamma * np.eye(k)
    rhs = np.asarray(Z @ F.T)
    # pinv keeps rows with fewer observations than factors solvable at gamma=0
    return np.einsum("rij,rj->ri", np.linalg.pinv(gram, hermitian=True), rhs)


def _observed_residual(rows, cols, z, X, Y, chunk_size=200_000):
    total = 0.0
    for start in range(0, len(z), chunk_size):
        r = rows[start:start + chunk_size]
        c = cols[start:start + chunk_size]
        pred = np.einsum("ik,ik->i", X[r], Y[:, c].T)
        total += float(((z[start:start + chunk_size] - pred) ** 2).sum())
    return total


class GLRM:
    """Low-rank model of a partially observed rating matrix.

    Columns (movies) are de-meaned over their observed entries, then
    A - mean ~ X @ Y is fitted by alternating least squares with loss
    restricted to observed cells and a quadratic penalty ``gamma`` on both
    X (users x rank) and Y (rank x movies). Only the stored entries of the
    rating matrix are touched while fitting.
    """

    def __init__(self, rank=10, gamma=0.0, max_iterations=config.GLRM_MAX_ITERATIONS,
                 tolerance=config.GLRM_TOLERANCE, random_state=config.RANDOM_STATE):
        self.rank = rank
        self.gamma = gamma
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.random_state = random_state

    def _initialize(self, Z, density):
        m, n = Z.shape
        k = min(self.rank, m, n)
        if k < min(m, n) and m * n > DENSE_SVD_LIMIT:
            v0 = np.random.RandomState(self.random_state).uniform(-1, 1, min(m, n))
            U, s, Vt = svds(Z, k=k, v0=v0)
            order = np.argsort(s)[::-1]
            U, s, Vt = U[:, order], s[order], Vt[order]
        else:
            U, s, Vt = np.linalg.svd(Z.toarray(), full_matrices=False)
            U, s, Vt = U[:, :k], s[:k], Vt[:k]
        # zero filling scales singular values by the observed fraction; the
        # balanced soft-thresholded SVD is the exact optimum when nothing is missing
        root = np.sqrt(np.maximum(s / density - self.gamma, 0.0))
        X = np.zeros((m, self.rank))
        Y = np.zeros((self.rank, n))
        X[:, :k] = U * root
        Y[:k] = root[:, None] * Vt
        return X, Y

    def _objective(self, rows, cols, z, X, Y):
        residual = _observed_residual(rows, cols, z, X, Y)
        penalty = self.gamma * float((X ** 2).sum() + (Y ** 2).sum())
        return residual, residual + penalty

    def fit(self, matrix):
        if self.rank < 1:
            raise ValueError("rank must be at least 1")
        if self.gamma < 0:
            raise ValueError("gamma must be non-negative")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if matrix.n_observed == 0:
            raise ModelFitError("rating matrix has no observed entries")

        m, n = matrix.shape
        coo = matrix.values.tocoo()
        rows, cols = coo.row, coo.col
        counts = np.bincount(cols, minlength=n).astype(float)
        sums = np.bincount(cols, weights=coo.data, minlength=n)
        means = np.divide(sums, counts, out=np.zeros(n), where=counts > 0)
        z = coo.data.astype(float) - means[cols]
        Z = sparse.csr_matrix((z, (rows, cols)), shape=(m, n))
        W = sparse.csr_matrix((np.ones_like(z), (rows, cols)), shape=(m, n))
        Zt, Wt = Z.T.tocsr(), W.T.tocsr()

        X, Y = self._initialize(Z, density=len(z) / (m * n))
        objective = np.inf
        self.converged_ = False
        for iteration in range(1, self.max_iterations + 1):
            X = _ridge_rows(Z, W, Y, self.gamma)
            Y = _ridge_rows(Zt, Wt, X.T, self.gamma).T
            previous = objective
            residual, objective = self._objective(rows, cols, z, X, Y)
            if not np.isfinite(objective):
                raise ModelFitError(
                    f"GLRM objective diverged at iteration {iteration} (rank={self.rank}, gamma={self.gamma})"
                )
            if np.isfinite(previous) and previous - objective <= self.tolerance * max(previous, 1.0):
                self.converged_ = True
                break
        if not self.converged_:
            logger.warning(
                "GLRM rank=%d gamma=%g stopped after %d iterations without converging",
                self.rank, self.gamma, self.max_iterations,
            )

        self.user_ids_ = matrix.user_ids
        self.movie_ids_ = matrix.movie_ids
        self.column_means_ = means
        self.user_factors_ = X
        self.movie_factors_ = Y
        self.n_iterations_ = iteration
        self.objective_ = objective
        self.training_residual_ = residual
        self.training_matrix_ = matrix
        return self

    @property
    def factors(self):
        return self.user_factors_, self.movie_factors_

    def _factor_names(self):
        return [f"factor_{i}" for i in range(self.rank)]

    def user_factors(self):
        return pd.DataFrame(self.user_factors_, index=self.user_ids_, columns=self._factor_names())

    def movie_factors(self):
        return pd.DataFrame(self.movie_factors_, index=self._factor_names(), columns=self.movie_ids_)

    def reconstruct(self):
        values = self.user_factors_ @ self.movie_factors_ + self.column_means_
        return pd.DataFrame(values, index=self.user_ids_, columns=self.movie_ids_)

    def impute(self, matrix=None):
        """Reconstruction with every observed entry of ``matrix`` kept as is."""
        matrix = self.training_matrix_ if matrix is None else matrix
        filled = self.reconstruct()
        values = filled.to_numpy(copy=True)
        observed = matrix.entries()
        rows = self.user_ids_.get_indexer(observed["user_id"])
        cols = self.movie_ids_.get_indexer(observed["movie_id"])
        known = (rows >= 0) & (cols >= 0)
        values[rows[known], cols[known]] = observed["rating"].to_numpy()[known]
        return pd.DataFrame(values, index=filled.index, columns=filled.columns)

    def predict(self, user_ids, movie_ids):
        """Predicted ratings; NaN where the user or movie was not in training."""
        rows = self.user_ids_.get_indexer(np.asarray(user_ids, dtype=object))
        cols = self.movie_ids_.get_indexer(np.asarray(movie_ids, dtype=object))
        known = (rows >= 0) & (cols >= 0)
        preds = np.full(len(rows), np.nan)
        r, c = rows[known], cols[known]
        preds[known] = np.einsum("ik,ki->i", self.user_factors_[r], self.movie_factors_[:, c])
        preds[known] += self.column_means_[c]
        return preds

    def score(self, matrix):
        entries = matrix.entries()
        preds = self.predict(entries["user_id"], entries["movie_id"])
        scorable = ~np.isnan(preds)
        if not scorable.any():
            raise ValueError("no evaluation entry falls inside the training matrix")
        skipped = int((~scorable).sum())
        if skipped:
            logger.debug("Skipped %d evaluation entries outside the training matrix", skipped)
        actual = entries["rating"].to_numpy()[scorable]
        return float(np.sqrt(mean_squared_error(actual, preds[scorable])))

    def factor_coordinates(self, axis="movie", components=(0, 1)):
        components = list(components)
        if axis == "movie":
            coords, index = self.movie_factors_.T[:, components], self.movie_ids_
        elif axis == "user":
            coords, index = self.user_factors_[:, components], self.user_ids_
        else:
            raise ValueError(f"axis must be 'movie' or 'user', got {axis!r}")
        return pd.DataFrame(coords, index=index, columns=[f"factor_{c}" for c in components])

    def similar_movies(self, movie_id, k=10):
        j = self.movie_ids_.get_loc(movie_id)
        vectors = self.movie_factors_.T
        sims = cosine_similarity(vectors[j:j + 1], vectors).ravel()
        order = [i for i in np.argsort(-sims, kind="stable") if i != j][:k]
        return pd.Series(sims[order], index=self.movie_ids_[order], name="similarity")

    def recommend(self, user_id, k=10):
        """Top-k movies the user has not rated, by predicted rating."""
        i = self.user_ids_.get_loc(user_id)
        scores = self.user_factors_[i] @ self.movie_factors_ + self.column_means_
        unseen = np.ones(len(scores), dtype=bool)
        unseen[self.training_matrix_.values[i].indices] = False
        candidates = np.flatnonzero(unseen)
        order = candidates[np.argsort(-scores[candidates], kind="stable")][:k]
        return pd.Series(scores[order], index=self.movie_ids_[order], name="predicted_rating")


def fit_low_rank_factorization(training_matrix, rank, regularization_strength, evaluation_matrix,
                               max_iterations=config.GLRM_MAX_ITERATIONS,
                               tolerance=config.GLRM_TOLERANCE,
                               random_state=config.RANDOM_STATE):
    model = GLRM(rank=rank, gamma=regularization_strength, max_iterations=max_iterations,
                 tolerance=tolerance, random_state=random_state).fit(training_matrix)
    rmse = model.score(evaluation_matrix)
    logger.info(
        "GLRM rank=%d gamma=%g: %d iterations, evaluation RMSE %.4f",
        rank, regularization_strength, model.n_iterations_, rmse,
    )
    return model, rmse


@dataclass(frozen=True)
class SweepResult:
    table: pd.DataFrame
    models: Dict[Tuple[int, float], GLRM] = field(repr=False)
    best_rank: int
    best_gamma: float

    @property
    def best_model(self):
        return self.models[(self.best_rank, self.best_gamma)]


def select_best(table):
    """Row with the lowest RMSE; ties go to the smaller rank, then the smaller gamma."""
    return table.sort_values(["rmse", "rank", "gamma"], kind="mergesort").iloc[0]


def sweep_low_rank(train_matrix, eval_matrix, sweep_config=None):
    sweep_config = (sweep_config or SweepConfig()).validate()
    grid = sweep_config.grid()
    logger.info("Fitting %d GLRM configurations (n_jobs=%d)", len(grid), sweep_config.n_jobs)

    # joblib returns results in submission order, not completion order
    fits = Parallel(n_jobs=sweep_config.n_jobs)(
        delayed(fit_low_rank_factorization)(
            train_matrix, rank, gamma, eval_matrix,
            max_iterations=sweep_config.max_iterations,
            tolerance=sweep_config.tolerance,
            random_state=sweep_config.random_state,
        )
        for rank, gamma in grid
    )

    rows = []
    models = {}
    for (rank, gamma), (model, rmse) in zip(grid, fits):
        models[(rank, gamma)] = model
        rows.append({
            "rank": rank,
            "gamma": gamma,
            "rmse": rmse,
            "iterations": model.n_iterations_,
            "converged": model.converged_,
            "training_residual": model.training_residual_,
        })
    table = pd.DataFrame(rows)
    best = select_best(table)
    logger.info("Best GLRM: rank=%d gamma=%g RMSE %.4f", best["rank"], best["gamma"], best["rmse"])
    return SweepResult(table=table, models=models,
                       best_rank=int(best["rank"]), best_gamma=float(best["gamma"]))
