import numpy as np
import pandas as pd
import pytest

GENRES = ["Action", "Comedy", "Drama", "Horror"]


@pytest.fixture
def tiny_ratings():
    return pd.DataFrame({
        "user_id": ["u1", "u1", "u2"],
        "movie_id": ["m1", "m2", "m1"],
        "rating": [5.0, 3.0, 4.0],
        "timestamp": [100, 200, 300],
    })


@pytest.fixture
def tiny_movies():
    return pd.DataFrame({
        "movie_id": ["m1", "m2"],
        "title": ["First (1995)", "Second (1996)"],
        "genres": ["Comedy", "Comedy|Drama"],
    })


def make_synthetic(seed=0, n_users=40, n_movies=30, density=0.7):
    """Ratings driven by user/movie offsets plus a rank-2 term, integer ids."""
    rng = np.random.RandomState(seed)
    movie_genres = []
    for j in range(n_movies):
        picked = [g for g in GENRES if rng.rand() < 0.4] or [GENRES[j % len(GENRES)]]
        movie_genres.append("|".join(picked))
    user_bias = rng.uniform(-1, 1, n_users)
    movie_bias = rng.uniform(-1, 1, n_movies)
    U = rng.normal(scale=0.5, size=(n_users, 2))
    V = rng.normal(scale=0.5, size=(n_movies, 2))
    rows = []
    for u in range(n_users):
        for m in range(n_movies):
            if rng.rand() < density:
                r = 3 + user_bias[u] + movie_bias[m] + U[u] @ V[m] + rng.normal(scale=0.1)
                rows.append((u + 1, m + 1, float(np.clip(r, 0.5, 5.0)), 1_000_000 + len(rows)))
    ratings = pd.DataFrame(rows, columns=["user_id", "movie_id", "rating", "timestamp"])
    movies = pd.DataFrame({
        "movie_id": np.arange(1, n_movies + 1),
        "title": [f"Movie {j} (2000)" for j in range(1, n_movies + 1)],
        "genres": movie_genres,
    })
    return ratings, movies


@pytest.fixture
def synthetic():
    return make_synthetic()


@pytest.fixture
def synthetic_str(synthetic):
    ratings, movies = synthetic
    ratings = ratings.assign(user_id=ratings["user_id"].astype(str),
                             movie_id=ratings["movie_id"].astype(str))
    return ratings, movies


@pytest.fixture
def movielens_files(tmp_path, synthetic):
    ratings, movies = synthetic
    ratings_path = tmp_path / "ratings.csv"
    movies_path = tmp_path / "movies.csv"
    ratings.rename(columns={"user_id": "userId", "movie_id": "movieId"}).to_csv(ratings_path, index=False)
    movies.rename(columns={"movie_id": "movieId"}).to_csv(movies_path, index=False)
    return str(ratings_path), str(movies_path)
