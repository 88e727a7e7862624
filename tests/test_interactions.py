import pandas as pd
import pytest

from movielens_recsys.interactions import InteractionExpander


@pytest.fixture
def frame():
    return pd.DataFrame({
        "user_id": ["a", "a", "a", "a", "b", "b", "b", "c"],
        "Comedy": pd.array([True, True, True, False, True, True, True, True], dtype="boolean"),
        "Drama": pd.array([True, False, False, False, False, False, False, None], dtype="boolean"),
    })


def test_levels_below_min_support_are_dropped(frame):
    expander = InteractionExpander(min_support=3).fit(frame, "user_id", ["Comedy", "Drama"])
    assert expander.columns_ == ["user_id_Comedy", "user_id_Drama"]
    assert expander.levels_["user_id_Comedy"] == ("Comedy", ["a_1", "b_1"])
    assert expander.levels_["user_id_Drama"] == ("Drama", ["a_0", "b_0"])


def test_column_without_supported_level_is_dropped(frame):
    expander = InteractionExpander(min_support=4).fit(frame, "user_id", ["Comedy", "Drama"])
    assert expander.columns_ == []
    assert expander.transform(frame).shape == (8, 0)


def test_max_levels_keeps_most_frequent(frame):
    frame = pd.concat([frame, frame.iloc[[4]]], ignore_index=True)
    expander = InteractionExpander(min_support=1, max_levels=2).fit(frame, "user_id", ["Comedy"])
    # b_1 now occurs 4 times, a_1 3 times, a_0 and c_1 once each
    assert expander.levels_["user_id_Comedy"] == ("Comedy", ["b_1", "a_1"])


def test_frequency_ties_break_by_label(frame):
    expander = InteractionExpander(min_support=1, max_levels=3).fit(frame, "user_id", ["Comedy"])
    assert expander.levels_["user_id_Comedy"][1] == ["a_1", "b_1", "a_0"]


def test_transform_nulls_unretained_and_missing(frame):
    out = InteractionExpander(min_support=3).fit_transform(frame, "user_id", ["Comedy", "Drama"])
    assert isinstance(out["user_id_Comedy"].dtype, pd.CategoricalDtype)
    assert out["user_id_Comedy"].iloc[0] == "a_1"
    assert pd.isna(out["user_id_Comedy"].iloc[3])
    assert pd.isna(out["user_id_Comedy"].iloc[7])
    assert pd.isna(out["user_id_Drama"].iloc[7])
    assert out.index.equals(frame.index)


def test_transform_new_frame_with_unseen_user(frame):
    expander = InteractionExpander(min_support=3).fit(frame, "user_id", ["Comedy"])
    other = pd.DataFrame({"user_id": ["b", "z"], "Comedy": pd.array([True, True], dtype="boolean")})
    out = expander.transform(other)
    assert out["user_id_Comedy"].iloc[0] == "b_1"
    assert pd.isna(out["user_id_Comedy"].iloc[1])


@pytest.mark.parametrize("kwargs", [{"min_support": 0}, {"max_levels": 0}])
def test_invalid_parameters(kwargs):
    with pytest.raises(ValueError):
        InteractionExpander(**kwargs)


def test_transform_before_fit(frame):
    with pytest.raises(RuntimeError):
        InteractionExpander().transform(frame)
