"""
Babbler Brain -- learn text into a transition graph and generate replies.

Learning slides an ``order``-wide window over each tokenized input and
records the transitions between consecutive windows. Replying picks pivot
tokens from the input, walks the graph forward and backward from a node
containing a pivot, recombines the partial walks into full chains and keeps
the best scoring one found before the deadline.

Usage:
    Brain.init("brain.db", order=3)
    brain = Brain("brain.db")
    brain.learn("The quick brown fox jumps over the lazy dog.")
    print(brain.reply("fox"))
"""

import itertools
import logging
import random
import time
from collections import defaultdict
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from babbler.scoring import CobeScorer, ScorerGroup
from babbler.sqlite_graph import END_TOKEN, BabblerError, SQLiteGraph
from babbler.tokenizers import TOKENIZERS, CobeStemmer, get_tokenizer

logger = logging.getLogger("babbler.brain")

# The classic MegaHAL reply for an essentially empty brain
FALLBACK_REPLY = "I don't know enough to answer you yet!"

_BABBLE_DRAWS = 5


class TokenSlot(Enum):
    """Markers that can appear in a resolved token sequence besides token ids."""

    # (single) whitespace; never stored in the tokens table, it becomes the
    # has_space flag of the next transition instead
    SPACE = "space"


class Reply:
    """A candidate reply: a chain of edge ids through the graph."""

    __slots__ = ("graph", "tokens", "token_ids", "pivot_node", "edge_ids", "_text")

    def __init__(self, graph: SQLiteGraph, tokens, token_ids, pivot_node: int, edge_ids: List[int]):
        self.graph = graph
        self.tokens = tokens
        self.token_ids = token_ids
        self.pivot_node = pivot_node
        self.edge_ids = edge_ids
        self._text: Optional[str] = None

    @property
    def text(self) -> str:
        if self._text is None:
            parts = []
            for word, has_space in map(self.graph.get_text_by_edge, self.edge_ids):
                parts.append(word)
                if has_space:
                    parts.append(" ")
            self._text = "".join(parts)
        return self._text


def _pivot_sort_key(pivot):
    # stem classes (tuples) sort after single token ids
    return (isinstance(pivot, tuple), pivot)


class Brain:
    """The main interface: learn text and reply to it."""

    def __init__(self, filename, seed: Optional[int] = None):
        if not Path(filename).exists():
            logger.info("File does not exist. Assuming defaults.")
            Brain.init(filename)

        self.random = random.Random(seed)
        self.graph = graph = SQLiteGraph(filename, rng=self.random)
        if graph.order is None:
            graph.close()
            raise BabblerError(f"{filename} is not a babbler brain")

        self.order: int = graph.order
        self.scorer = ScorerGroup()
        self.scorer.add_scorer(1.0, CobeScorer())

        self.tokenizer = get_tokenizer(graph.get_info_text("tokenizer"))

        self.stemmer = None
        stemmer_name = graph.get_info_text("stemmer")
        if stemmer_name is not None:
            try:
                self.stemmer = CobeStemmer(stemmer_name)
                logger.debug("Initialized a stemmer: %s", stemmer_name)
            except KeyError as e:
                logger.error("Error creating stemmer %s: %s", stemmer_name, e)

        self._end_token_id = graph.get_token_by_text(END_TOKEN, create=True)
        self._end_context = [self._end_token_id] * self.order
        self._end_context_id = graph.get_node_by_tokens(self._end_context)
        graph.commit()

        self._learning = False

    def close(self) -> None:
        self.graph.close()

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @staticmethod
    def init(filename, order: int = 3, tokenizer: Optional[str] = None) -> None:
        """Initialize a brain. This brain's file must not already exist.

        Keyword arguments:
        order -- Order of the forward/reverse Markov chains (integer)
        tokenizer -- One of Cobe, MegaHAL (default Cobe). See
                     babbler.tokenizers for details.
        """
        logger.info("Initializing a babbler brain: %s", filename)

        if tokenizer is None:
            tokenizer = "Cobe"

        if tokenizer not in TOKENIZERS:
            logger.info("Unknown tokenizer: %s. Using CobeTokenizer", tokenizer)
            tokenizer = "Cobe"

        graph = SQLiteGraph(filename)
        try:
            graph.init(order, tokenizer)
        finally:
            graph.close()

    def start_batch_learning(self) -> None:
        """Begin a series of batch learn operations. Data will not be
        committed to the database until stop_batch_learning is called.
        Learn text using the normal learn(text) method."""
        self._learning = True

        self.graph.set_journal_mode("memory")
        self.graph.drop_reply_indexes()

    def stop_batch_learning(self) -> None:
        """Finish a series of batch learn operations."""
        self._learning = False

        self.graph.set_journal_mode("truncate")
        self.graph.ensure_indexes()
        self.graph.commit()

    def del_stemmer(self) -> None:
        self.stemmer = None

        self.graph.delete_token_stems()
        self.graph.set_info_text("stemmer", None)
        self.graph.commit()

    def set_stemmer(self, language: str) -> None:
        self.stemmer = CobeStemmer(language)

        self.graph.delete_token_stems()
        self.graph.update_token_stems(self.stemmer)
        self.graph.set_info_text("stemmer", language)
        self.graph.commit()

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def learn(self, text) -> None:
        """Learn a string of text. Bytes are decoded as utf-8."""
        if isinstance(text, bytes):
            text = text.decode("utf-8")

        tokens = self.tokenizer.split(text)
        self._learn_tokens(tokens)

    def _to_edges(self, tokens) -> Iterator[Tuple[tuple, bool]]:
        """This is an iterator that returns the nodes of our graph:
        "This is a test" -> "None This" "This is" "is a" "a test" "test None"

        Each is annotated with a boolean that tracks whether whitespace was
        found between the two tokens."""
        # prepend self.order end tokens
        chain = self._end_context + list(tokens) + self._end_context

        has_space = False

        context = []
        for token_id in chain:
            context.append(token_id)

            if len(context) == self.order:
                if token_id is TokenSlot.SPACE:
                    context.pop()
                    has_space = True
                    continue

                yield tuple(context), has_space

                context.pop(0)
                has_space = False

    def _to_graph(self, contexts) -> Iterator[Tuple[tuple, bool, tuple]]:
        """This is an iterator that returns each edge of our graph
        with its two nodes"""
        prev = None

        for context in contexts:
            if prev is None:
                prev = context
                continue

            yield prev[0], context[1], context[0]
            prev = context

    def _learn_tokens(self, tokens: List[str]) -> None:
        token_count = len([token for token in tokens if token.strip()])
        if token_count < 3:
            return

        graph = self.graph
        try:
            # create each of the non-whitespace tokens
            token_ids = []
            for text in tokens:
                if not text.strip():
                    token_ids.append(TokenSlot.SPACE)
                    continue

                token_ids.append(graph.get_token_by_text(text, create=True, stemmer=self.stemmer))

            prev_id = None
            for prev, has_space, next_context in self._to_graph(self._to_edges(token_ids)):
                if prev_id is None:
                    prev_id = graph.get_node_by_tokens(prev)
                next_id = graph.get_node_by_tokens(next_context)

                graph.add_edge(prev_id, next_id, has_space)
                prev_id = next_id
        except Exception:
            if not self._learning:
                graph.rollback()
            raise

        if not self._learning:
            graph.commit()

    # ------------------------------------------------------------------
    # Replying
    # ------------------------------------------------------------------

    def reply(self, text, loop_ms: int = 500, max_len: Optional[int] = None) -> str:
        """Reply to a string of text. Bytes are decoded as utf-8."""
        if isinstance(text, bytes):
            text = text.decode("utf-8")

        tokens = self.tokenizer.split(text)
        input_ids = [self.graph.get_token_by_text(token) for token in tokens]
        known_ids = [token_id for token_id in input_ids if token_id is not None]

        # filter out unknown words and non-words from the potential pivots
        pivot_set = self._filter_pivots(known_ids)

        # Conflate the known ids with the stems of their words
        if self.stemmer is not None:
            self._conflate_stems(pivot_set, tokens)

        # If we didn't recognize any word tokens in the input, pick
        # something random from the database and babble.
        if not pivot_set:
            pivot_set = self._babble()

        if not pivot_set:
            # we couldn't find any pivot words in _babble(), so we're
            # working with an essentially empty brain
            return FALLBACK_REPLY

        score_cache = {}

        best_score = -1.0
        best_reply = None

        # Loop for approximately loop_ms milliseconds. This can take longer
        # if a single candidate is slow to generate or score, but the
        # deadline is only checked between candidates.
        start = time.monotonic()
        end = start + loop_ms / 1000.0

        count = 0
        for edges, pivot_node in self._generate_replies(pivot_set, deadline=end):
            reply = Reply(self.graph, tokens, known_ids, pivot_node, edges)

            if max_len is None or not self._too_long(max_len, reply):
                key = tuple(reply.edge_ids)
                if key not in score_cache:
                    score_cache[key] = self.scorer.score(reply)
                score = score_cache[key]

                # first seen wins ties
                if score > best_score:
                    best_reply = reply
                    best_score = score

                count += 1

            if time.monotonic() >= end:
                break

        if best_reply is None:
            return FALLBACK_REPLY

        elapsed = time.monotonic() - start
        self.scorer.end(best_reply)

        logger.debug("made %d replies (%d unique) in %f seconds", count, len(score_cache), elapsed)

        msg = text[:60] + "..." if len(text) > 60 else text
        logger.info("[%s] %d %f", msg, count, best_score)

        # look up the words for these tokens
        return best_reply.text

    def _too_long(self, max_len: int, reply: Reply) -> bool:
        text = reply.text
        if len(text) > max_len:
            logger.debug("over max_len [%d]: %s", len(text), text)
            return True
        return False

    def _conflate_stems(self, pivot_set: Set, tokens: List[str]) -> None:
        for token in tokens:
            stem_ids = self.graph.get_token_stem_ids(self.stemmer.stem(token))
            if not stem_ids:
                continue

            # add the tuple of stems to the pivot set, and then
            # remove the individual token_ids
            pivot_set.add(tuple(sorted(stem_ids)))
            pivot_set.difference_update(stem_ids)

    def _babble(self) -> Set[int]:
        token_ids = set()
        for _ in range(_BABBLE_DRAWS):
            # Generate a few random tokens that can be used as pivots
            token_id = self.graph.get_random_token()

            if token_id is not None:
                token_ids.add(token_id)

        return token_ids

    def _filter_pivots(self, pivots) -> Set[int]:
        # remove pivots that might not give good results
        tokens = set(pivots)

        filtered = self.graph.get_word_tokens(tokens)
        if not filtered:
            filtered = self.graph.get_tokens(tokens)

        return set(filtered)

    def _pick_pivot(self, pivot_ids) -> int:
        pivot = self.random.choice(pivot_ids)

        if isinstance(pivot, tuple):
            # the input word was stemmed to several things
            pivot = self.random.choice(pivot)

        return pivot

    def _generate_replies(self, pivot_ids, deadline: Optional[float] = None) -> Iterator[Tuple[List[int], int]]:
        """Yield (edge_ids, pivot_node) for full chains through a pivot.

        Runs until the caller stops iterating. A pivot draw that produces
        nothing gives up once ``deadline`` (a time.monotonic() value) passes.
        """
        if not pivot_ids:
            return

        pivots = sorted(pivot_ids, key=_pivot_sort_key)
        end = self._end_context_id
        graph = self.graph
        search = graph.search_random_walk

        # Cache all the trailing and beginning sentences we find from
        # each random node we search. Since the node is a full n-tuple
        # context, we can combine any pair of next_cache[node] and
        # prev_cache[node] and get a new reply.
        next_cache = defaultdict(list)
        prev_cache = defaultdict(list)

        while True:
            produced = False

            # generate a reply containing one of token_ids
            pivot_id = self._pick_pivot(pivots)
            node = graph.get_random_node_with_token(pivot_id)

            if node is not None:
                parts = itertools.zip_longest(search(node, end, True), search(node, end, False))

                for next_path, prev_path in parts:
                    if next_path is not None:
                        next_cache[node].append(next_path)
                        for prev in list(prev_cache[node]):
                            produced = True
                            yield prev + next_path, node

                    if prev_path is not None:
                        prev_path = prev_path[::-1]
                        prev_cache[node].append(prev_path)
                        for next_ in list(next_cache[node]):
                            produced = True
                            yield prev_path + next_, node

            if not produced and deadline is not None and time.monotonic() >= deadline:
                return
