import logging
from dataclasses import dataclass

import pandas as pd

from movielens_recsys import config
from movielens_recsys.cf_model import SweepResult, build_rating_matrix, sweep_low_rank
from movielens_recsys.config import SweepConfig
from movielens_recsys.content_model import ContentModel, fit_linear_model
from movielens_recsys.data_utils import (
    FeatureTable, load_movies, load_ratings, prepare_features, train_test_split_ratings,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    features: FeatureTable
    content_model: ContentModel
    content_mae: float
    sweep: SweepResult

    @property
    def best_model(self):
        return self.sweep.best_model


def run_pipeline(ratings_path=config.RATINGS_PATH, movies_path=config.MOVIES_PATH,
                 sweep_config=None, test_size=config.TEST_SIZE,
                 random_state=config.RANDOM_STATE, glm_alpha=config.GLM_ALPHA,
                 min_support=config.MIN_SUPPORT, level_cap_per_user=config.LEVEL_CAP_PER_USER):
    # configuration errors surface before any data is read or model fitted
    sweep_config = (sweep_config or SweepConfig()).validate()
    if not 0 < test_size < 1:
        raise ValueError(f"test_size must be between 0 and 1, got {test_size}")

    ratings = load_ratings(ratings_path)
    movies = load_movies(movies_path)
    features = prepare_features(ratings, movies, min_support=min_support,
                                level_cap_per_user=level_cap_per_user)

    train, test = train_test_split_ratings(features.frame, test_size=test_size,
                                           random_state=random_state)
    logger.info("Split %d rows into %d train / %d test", len(features.frame), len(train), len(test))

    content_model, mae = fit_linear_model(
        train, features.feature_columns, target_column="rating",
        regularization_strength=glm_alpha, evaluation_rows=test,
    )

    sweep = sweep_low_rank(build_rating_matrix(train), build_rating_matrix(test), sweep_config)
    return PipelineResult(features=features, content_model=content_model,
                          content_mae=mae, sweep=sweep)


def main():
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    result = run_pipeline()
    print(f"Content-based GLM MAE: {result.content_mae:.4f}")
    with pd.option_context("display.width", 120):
        print(result.sweep.table.to_string(index=False))
    print(f"Selected GLRM: rank={result.sweep.best_rank} gamma={result.sweep.best_gamma:g}")
    coords = result.best_model.factor_coordinates("movie")
    frame = result.features.frame.drop_duplicates("movie_id")
    titles = pd.Series(frame["title"].to_numpy(), index=frame["movie_id"].astype(object), name="title")
    print(coords.join(titles).head(10).to_string())


if __name__ == "__main__":
    main()
