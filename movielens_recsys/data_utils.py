import logging
from dataclasses import dataclass, field
from typing import List

import pandas as pd
from sklearn.model_selection import train_test_split

from movielens_recsys import config
from movielens_recsys.interactions import InteractionExpander

logger = logging.getLogger(__name__)

RATING_COLUMNS = ["user_id", "movie_id", "rating", "timestamp"]
MOVIE_COLUMNS = ["movie_id", "title", "genres"]
GENRE_SEPARATOR = "|"


@dataclass(frozen=True)
class FeatureTable:
    frame: pd.DataFrame
    genre_columns: List[str] = field(default_factory=list)
    interaction_columns: List[str] = field(default_factory=list)

    @property
    def feature_columns(self):
        return ["user_id", "movie_id"] + list(self.interaction_columns)


def _read_delimited(path, cols):
    # MovieLens 1M/10M ship "::" separated .dat files without a header,
    # ml-latest ships comma separated .csv files with one
    with open(path, "r", encoding="latin-1") as f:
        first = f.readline()
    if "::" in first:
        return pd.read_csv(path, sep="::", names=cols, engine="python", encoding="latin-1")
    has_header = not first.split(",")[0].strip().strip('"').isdigit()
    df = pd.read_csv(path, sep=",", header=0 if has_header else None, encoding="utf-8")
    df = df.iloc[:, : len(cols)]
    df.columns = cols[: df.shape[1]]
    return df


def to_label(series):
    """Coerce an identifier column to unordered categorical string labels."""
    labels = series.astype("string")
    # integral floats such as 1.0 come back from columns with gaps in them
    labels = labels.str.replace(r"\.0$", "", regex=True)
    return labels.astype(object).where(series.notna()).astype("category")


def load_ratings(path=config.RATINGS_PATH):
    df = _read_delimited(path, RATING_COLUMNS)
    df["rating"] = pd.to_numeric(df["rating"], errors="coerce")
    if "timestamp" in df.columns:
        df["timestamp"] = pd.to_numeric(df["timestamp"], errors="coerce")
    bad = int(df["rating"].isna().sum())
    if bad:
        logger.warning("%d ratings in %s could not be parsed", bad, path)
    logger.info("Loaded %d ratings from %s", len(df), path)
    return df


def load_movies(path=config.MOVIES_PATH):
    df = _read_delimited(path, MOVIE_COLUMNS)
    if "genres" not in df.columns:
        df["genres"] = None
    logger.info("Loaded %d movies from %s", len(df), path)
    return df


def explode_genres(movies):
    """Long (movie_id, genre) table, one row per genre tag of a movie."""
    genres = movies["genres"].where(movies["genres"].notna(), "").astype(str)
    long = pd.DataFrame({"movie_id": movies["movie_id"], "genre": genres.str.split(GENRE_SEPARATOR)})
    long = long.explode("genre")
    long["genre"] = long["genre"].str.strip()
    long = long[long["genre"] != ""]
    return long.drop_duplicates().reset_index(drop=True)


def genre_indicators(movies):
    long = explode_genres(movies)
    if long.empty:
        return pd.DataFrame(index=pd.Index([], name="movie_id"))
    flags = pd.crosstab(long["movie_id"].astype(object), long["genre"].astype(object)) > 0
    flags = flags.astype("boolean")
    flags.index.name = "movie_id"
    flags.columns.name = None
    return flags


def genres_from_indicators(row, genre_columns):
    return {g for g in genre_columns if pd.notna(row[g]) and bool(row[g])}


def prepare_features(ratings, movies, min_support=config.MIN_SUPPORT,
                     level_cap_per_user=config.LEVEL_CAP_PER_USER):
    ratings = ratings.copy()
    movies = movies.copy()

    complete = ratings["user_id"].notna() & ratings["movie_id"].notna() & ratings["rating"].notna()
    if not complete.all():
        logger.warning("Dropping %d ratings without user, movie or rating", int((~complete).sum()))
        ratings = ratings[complete]

    ratings["user_id"] = to_label(ratings["user_id"])
    ratings["movie_id"] = to_label(ratings["movie_id"])
    movies["movie_id"] = to_label(movies["movie_id"])
    movies = movies.drop_duplicates("movie_id", keep="last")

    flags = genre_indicators(movies)
    genre_columns = list(flags.columns)

    # joins run on plain labels, categoricals with different categories
    # would otherwise be upcast inconsistently
    frame = ratings.assign(movie_id=ratings["movie_id"].astype(object))
    frame = frame.merge(
        movies[["movie_id", "title", "genres"]].assign(movie_id=movies["movie_id"].astype(object)),
        on="movie_id", how="left",
    )
    frame = frame.merge(flags, left_on="movie_id", right_index=True, how="left")
    for g in genre_columns:
        frame[g] = frame[g].astype("boolean")
    frame.index = ratings.index
    frame["movie_id"] = frame["movie_id"].astype("category")

    unmatched = int(frame["title"].isna().sum())
    if unmatched:
        logger.warning("%d ratings refer to movies missing from the movies table", unmatched)

    n_users = frame["user_id"].nunique()
    expander = InteractionExpander(min_support=min_support, max_levels=level_cap_per_user * n_users)
    interactions = expander.fit_transform(frame, "user_id", genre_columns)
    frame = pd.concat([frame, interactions], axis=1)

    logger.info(
        "Feature table: %d rows, %d genres, %d interaction columns",
        len(frame), len(genre_columns), len(expander.columns_),
    )
    return FeatureTable(frame=frame, genre_columns=genre_columns,
                        interaction_columns=expander.columns_)


def train_test_split_ratings(df, test_size=config.TEST_SIZE, random_state=config.RANDOM_STATE):
    train, test = train_test_split(df, test_size=test_size, random_state=random_state)
    return train, test
