import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from movielens_recsys.content_model import ContentModel, RedundantColumnDropper, fit_linear_model
from movielens_recsys.data_utils import prepare_features, train_test_split_ratings
from movielens_recsys.exceptions import ModelFitError


@pytest.fixture
def split_features(synthetic):
    ratings, movies = synthetic
    table = prepare_features(ratings, movies)
    train, test = train_test_split_ratings(table.frame, test_size=0.25, random_state=42)
    return table, train, test


def test_dropper_removes_constant_and_duplicate_columns():
    X = np.array([
        [1, 1, 1, 0, 0],
        [1, 0, 0, 0, 1],
        [1, 1, 1, 0, 1],
        [1, 0, 0, 0, 0],
    ], dtype=float)
    dropper = RedundantColumnDropper().fit(sparse.csr_matrix(X))
    assert dropper.support_.tolist() == [False, True, False, False, True]
    out = dropper.transform(sparse.csr_matrix(X))
    assert out.shape == (4, 2)
    np.testing.assert_array_equal(out.toarray(), X[:, [1, 4]])


def test_dropper_rejects_all_constant_input():
    with pytest.raises(ModelFitError):
        RedundantColumnDropper().fit(sparse.csr_matrix(np.ones((3, 2))))


def test_glm_beats_global_mean(split_features):
    table, train, test = split_features
    model, mae = fit_linear_model(train, table.feature_columns, "rating",
                                  regularization_strength=0.1, evaluation_rows=test)
    baseline = np.abs(test["rating"] - train["rating"].mean()).mean()
    assert np.isfinite(mae)
    assert mae < 0.8 * baseline
    assert mae == pytest.approx(model.evaluate(test))


def test_fit_without_evaluation_rows(split_features):
    table, train, _ = split_features
    model, mae = fit_linear_model(train, table.feature_columns)
    assert mae is None
    assert isinstance(model, ContentModel)


def test_zero_variance_predictor_is_excluded(split_features):
    table, train, test = split_features
    train = train.assign(constant="same")
    test = test.assign(constant="same")
    model = ContentModel(table.feature_columns + ["constant"]).train(train)
    assert not any(name.startswith("constant=") for name in model.coefficients().index)
    assert np.isfinite(model.predict(test)).all()


def test_unseen_levels_do_not_abort_prediction(split_features):
    table, train, test = split_features
    model = ContentModel(table.feature_columns).train(train)
    unseen = test.head(5).copy()
    unseen["user_id"] = "new-user"
    preds = model.predict(unseen)
    assert preds.shape == (5,)
    assert np.isfinite(preds).all()


def test_coefficients_are_named_by_level(split_features):
    table, train, _ = split_features
    model = ContentModel(table.feature_columns).train(train)
    coefs = model.coefficients()
    assert any(name.startswith("user_id=") for name in coefs.index)
    assert any(name.startswith("movie_id=") for name in coefs.index)
    assert any(name.startswith("user_id_Comedy=") for name in coefs.index)


def test_missing_columns_are_reported():
    df = pd.DataFrame({"user_id": ["a"], "rating": [3.0]})
    with pytest.raises(ValueError, match="movie_id"):
        ContentModel(["user_id", "movie_id"]).train(df)


def test_all_constant_predictors_fail_the_stage():
    df = pd.DataFrame({"user_id": ["a", "a", "a"], "rating": [1.0, 2.0, 3.0]})
    with pytest.raises(ModelFitError):
        ContentModel(["user_id"]).train(df)


def test_predict_before_train():
    with pytest.raises(RuntimeError):
        ContentModel(["user_id"]).predict(pd.DataFrame({"user_id": ["a"]}))
