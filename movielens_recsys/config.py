import math
import os
from dataclasses import dataclass
from typing import Tuple

DATA_DIR = os.environ.get("MOVIELENS_RECSYS_DATA_DIR", "data")
RATINGS_PATH = os.path.join(DATA_DIR, "ratings.csv")
MOVIES_PATH = os.path.join(DATA_DIR, "movies.csv")

RANDOM_STATE = 42
TEST_SIZE = 0.25

# interaction columns: levels seen fewer than MIN_SUPPORT times are dropped,
# at most LEVEL_CAP_PER_USER * n_users levels are kept per column
MIN_SUPPORT = 3
LEVEL_CAP_PER_USER = 2

GLM_ALPHA = 0.1

SWEEP_RANKS = (5, 10, 15)
SWEEP_GAMMAS = (0.0, 5.0, 10.0)
GLRM_MAX_ITERATIONS = 500
GLRM_TOLERANCE = 1e-8
N_JOBS = int(os.environ.get("MOVIELENS_RECSYS_N_JOBS", "-1"))

LOG_LEVEL = os.environ.get("MOVIELENS_RECSYS_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class SweepConfig:
    ranks: Tuple[int, ...] = SWEEP_RANKS
    gammas: Tuple[float, ...] = SWEEP_GAMMAS
    max_iterations: int = GLRM_MAX_ITERATIONS
    tolerance: float = GLRM_TOLERANCE
    n_jobs: int = N_JOBS
    random_state: int = RANDOM_STATE

    def validate(self):
        if not self.ranks:
            raise ValueError("sweep needs at least one rank")
        if not self.gammas:
            raise ValueError("sweep needs at least one gamma")
        for rank in self.ranks:
            if isinstance(rank, bool) or int(rank) != rank or rank < 1:
                raise ValueError(f"rank must be a positive integer, got {rank!r}")
        for gamma in self.gammas:
            if not math.isfinite(gamma) or gamma < 0:
                raise ValueError(f"gamma must be finite and non-negative, got {gamma!r}")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if not self.tolerance > 0:
            raise ValueError("tolerance must be positive")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must not be 0")
        return self

    def grid(self):
        """(rank, gamma) pairs in sweep order, rank-major."""
        return [(int(rank), float(gamma)) for rank in self.ranks for gamma in self.gammas]
