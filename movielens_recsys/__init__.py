from movielens_recsys.exceptions import ModelFitError

__version__ = "0.1.0"
