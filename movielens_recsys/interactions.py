import logging

import pandas as pd

logger = logging.getLogger(__name__)


class InteractionExpander:
    """Crosses one categorical column with a set of flag columns.

    Each (left, right) pair becomes a categorical column whose levels are
    "<left value><separator><int(flag)>". Levels are counted over the frame
    passed to ``fit``; levels with fewer than ``min_support`` occurrences are
    dropped and at most ``max_levels`` of the most frequent ones are kept.
    A pair with no surviving level produces no column at all.
    """

    def __init__(self, min_support=3, max_levels=None, separator="_"):
        if min_support < 1:
            raise ValueError("min_support must be at least 1")
        if max_levels is not None and max_levels < 1:
            raise ValueError("max_levels must be at least 1")
        self.min_support = min_support
        self.max_levels = max_levels
        self.separator = separator
        self.left = None
        self.levels_ = {}

    @property
    def columns_(self):
        return list(self.levels_)

    def column_name(self, right):
        return f"{self.left}{self.separator}{right}"

    def _cross(self, frame, right):
        left = frame[self.left]
        flag = frame[right].astype("boolean")
        present = left.notna() & flag.notna()
        cross = left.astype(str) + self.separator + flag.fillna(False).astype(int).astype(str)
        return cross.where(present)

    def fit(self, frame, left, rights):
        self.left = left
        self.levels_ = {}
        dropped = 0
        for right in rights:
            counts = self._cross(frame, right).value_counts()
            counts = counts[counts >= self.min_support]
            if counts.empty:
                dropped += 1
                continue
            ranked = counts.rename("count").rename_axis("level").reset_index()
            ranked = ranked.sort_values(["count", "level"], ascending=[False, True], kind="mergesort")
            if self.max_levels is not None:
                ranked = ranked.head(self.max_levels)
            self.levels_[self.column_name(right)] = (right, list(ranked["level"]))
        logger.info(
            "Kept %d interaction columns for %s (%d dropped below min_support=%d)",
            len(self.levels_), left, dropped, self.min_support,
        )
        return self

    def transform(self, frame):
        if self.left is None:
            raise RuntimeError("InteractionExpander is not fitted")
        out = {}
        for name, (right, levels) in self.levels_.items():
            cross = self._cross(frame, right)
            out[name] = pd.Categorical(cross.where(cross.isin(levels)), categories=levels)
        return pd.DataFrame(out, index=frame.index)

    def fit_transform(self, frame, left, rights):
        return self.fit(frame, left, rights).transform(frame)
