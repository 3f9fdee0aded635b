"""
Babbler Scoring -- rank candidate replies.

A ScorerGroup combines weighted scorers. Each scorer maps a Reply to a
score in 0..1 (negative values mean "unscorable"); a negative weight inverts
a scorer so it penalizes the trait it would otherwise reward.
"""

import math
from typing import Dict, List, Tuple


class Scorer:
    def __init__(self):
        self.cache: Dict = {}

    def end(self, reply) -> None:
        """Reset the per-batch cache once a reply has been chosen."""
        self.cache = {}

    def normalize(self, score: float) -> float:
        # map high-valued scores into 0..1
        if score < 0:
            return score

        return 1.0 - 1.0 / (1.0 + score)

    def score(self, reply) -> float:
        raise NotImplementedError


class ScorerGroup:
    def __init__(self):
        self.scorers: List[Tuple[float, Scorer]] = []
        self.total_weight = 0.0

    def add_scorer(self, weight: float, scorer: Scorer) -> None:
        # add a scorer with a negative weight if you want to reverse
        # its impact
        self.scorers.append((weight, scorer))
        self.total_weight = sum(abs(w) for w, _ in self.scorers)

    def end(self, reply) -> None:
        for _, scorer in self.scorers:
            scorer.end(reply)

    def score(self, reply) -> float:
        # normalize to 0..1
        score = 0.0
        for weight, scorer in self.scorers:
            s = scorer.score(reply)

            if weight < 0.0:
                s = 1.0 - s

            score += abs(weight) * s

        return score / self.total_weight


class CobeScorer(Scorer):
    """Classic Cobe scorer"""

    def score(self, reply) -> float:
        edge_ids = reply.edge_ids
        info = 0.0

        logprob_cache = self.cache.setdefault("logprob", {})
        space_cache = self.cache.setdefault("has_space", {})

        get_edge_logprob = reply.graph.get_edge_logprob
        has_space = reply.graph.has_space

        # Calculate the information content of the edges in this reply.
        for edge_id in edge_ids:
            if edge_id not in logprob_cache:
                logprob_cache[edge_id] = get_edge_logprob(edge_id)

            info -= logprob_cache[edge_id]

        # Approximate the number of words in this reply. There are
        # (order - 1) boundary edges on either end of the reply, since every
        # chain is learned between two end contexts.
        n_words = len(edge_ids) - (reply.graph.order - 1) * 2

        # Add back one word for each space between edges, since spaces
        # never occupy a context slot.
        for edge_id in edge_ids:
            if edge_id not in space_cache:
                space_cache[edge_id] = has_space(edge_id)

            if space_cache[edge_id]:
                n_words += 1

        # Double the score, to match scoring the chain in both directions
        info *= 2.0

        # Penalize long replies. The > 16 test shadows the > 32 one, so
        # every reply past 16 words gets the square root penalty.
        if n_words > 16:
            info /= math.sqrt(n_words - 1)
        elif n_words > 32:
            info /= n_words

        return self.normalize(info)


class InformationScorer(Scorer):
    """Score based on the information of each edge in the graph"""

    def score(self, reply) -> float:
        logprob_cache = self.cache.setdefault("logprob", {})
        get_edge_logprob = reply.graph.get_edge_logprob

        info = 0.0
        for edge_id in reply.edge_ids:
            if edge_id not in logprob_cache:
                logprob_cache[edge_id] = get_edge_logprob(edge_id)

            info -= logprob_cache[edge_id]

        return self.normalize(info)


class LengthScorer(Scorer):
    def score(self, reply) -> float:
        return self.normalize(len(reply.edge_ids))
