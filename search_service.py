import logging
import math
import unicodedata
from typing import Dict, List, Optional

from config import YamlConfig
from db import ExerciseRepository
from settings_schema import SettingsSchema

logger = logging.getLogger(__name__)


class ExerciseSearch:
    """Fuzzy matching of free text against exercise names."""

    SUBSTRING_BASE = 10_000

    @staticmethod
    def normalize(text: str) -> str:
        """Fold accents and case; keep letters and digits separated by single spaces."""
        decomposed = unicodedata.normalize("NFKD", text.casefold())
        folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
        out: List[str] = []
        for ch in folded:
            if not ch.isalnum():
                ch = " "
            if ch == " " and out and out[-1] == " ":
                continue
            out.append(ch)
        return "".join(out).strip()

    @staticmethod
    def _score_term(term: str, candidate: str) -> Optional[int]:
        score = 0
        c_index = 0
        last_match = -10
        for t in term:
            while c_index < len(candidate) and candidate[c_index] != t:
                c_index += 1
            if c_index >= len(candidate):
                return None
            score += 25
            if c_index == 0 or candidate[c_index - 1] == " ":
                score += 40
            if c_index == last_match + 1:
                score += 30
            score += max(0, 30 - c_index)
            last_match = c_index
            c_index += 1
        score -= max(0, len(candidate) - len(term))
        return score

    @classmethod
    def fuzzy_score(
        cls,
        query: str,
        candidate: str,
        frequency: int = 0,
        frequency_weight: float = 0.2,
    ) -> Optional[int]:
        """Score ``candidate`` for ``query``; larger is better, ``None`` is no match.

        A contiguous match scores ``10000 - 20 * start - len(candidate)``.
        Otherwise every query term must match as a subsequence and the
        per-term scores are summed. Usage adds
        ``floor(base * frequency_weight * log2(frequency + 1))``.
        An empty query scores 0 for every candidate.
        """
        q = cls.normalize(query)
        if not q:
            return 0
        c = cls.normalize(candidate)
        if not c:
            return None

        start = c.find(q)
        if start >= 0:
            base = cls.SUBSTRING_BASE - start * 20 - len(c)
        else:
            base = 0
            for term in q.split():
                term_score = cls._score_term(term, c)
                if term_score is None:
                    return None
                base += term_score

        bonus = 0
        if base > 0 and frequency > 0 and frequency_weight > 0:
            bonus = math.floor(base * frequency_weight * math.log2(frequency + 1))
        return base + bonus


class SearchService:
    """Rank stored exercises against a query using their usage counts."""

    def __init__(
        self,
        exercise_repo: ExerciseRepository,
        config: YamlConfig | None = None,
        frequency_weight: float | None = None,
    ) -> None:
        self.exercises = exercise_repo
        self.config = config
        self._frequency_weight = frequency_weight

    @property
    def frequency_weight(self) -> float:
        if self._frequency_weight is not None:
            return self._frequency_weight
        if self.config is not None:
            return float(self.config.get("frequency_weight", SettingsSchema().frequency_weight))
        return SettingsSchema().frequency_weight

    def search(self, query: str, limit: int | None = None) -> List[dict]:
        """Return matching exercises as dicts with ``id``, ``name``, ``score`` and ``frequency``."""
        rows = self.exercises.fetch_all()
        frequencies: Dict[str, int] = self.exercises.usage_frequencies()
        weight = self.frequency_weight
        results = []
        for ex_id, name in rows:
            freq = frequencies.get(ex_id, 0)
            score = ExerciseSearch.fuzzy_score(query, name, freq, weight)
            if score is None:
                continue
            results.append({"id": ex_id, "name": name, "score": score, "frequency": freq})
        if ExerciseSearch.normalize(query):
            results.sort(key=lambda r: (-r["score"], r["name"].casefold(), r["name"]))
        else:
            results.sort(key=lambda r: (-r["frequency"], r["name"].casefold(), r["name"]))
        logger.debug("search %r matched %d exercises", query, len(results))
        if limit is not None:
            results = results[: max(0, limit)]
        return results
