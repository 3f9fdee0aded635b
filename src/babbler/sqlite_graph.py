"""
Babbler SQLite Graph -- the persistent transition graph behind a Brain.

Stores tokens, fixed-order contexts (nodes) and the transitions between them
(edges) in a single SQLite database. Every edge write adjusts the count of
its target node in the same savepoint, so for any node:

    nodes.count == SUM(edges.count WHERE edges.next_node = nodes.id)

Usage:
    graph = SQLiteGraph("brain.db")
    graph.init(order=3, tokenizer="Cobe")
    a = graph.get_node_by_tokens([1, 1, 2])
    b = graph.get_node_by_tokens([1, 2, 3])
    graph.add_edge(a, b, has_space=True)
    graph.commit()
"""

import logging
import math
import random
import re
import sqlite3
import time as _time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

logger = logging.getLogger("babbler.sqlite_graph")

SCHEMA_VERSION = "2"

# use an empty string to denote the start/end of a chain
END_TOKEN = ""

_WORD_RE = re.compile(r"\w")

# Legacy stores maintained node counts with these triggers. The graph now
# adjusts counts itself, so they are dropped on open to avoid double counting.
_LEGACY_COUNT_TRIGGERS = (
    "edges_insert_trigger",
    "edges_update_trigger",
    "edges_delete_trigger",
)


class BabblerError(Exception):
    """Base class for babbler errors."""


class IncompatibleStoreVersion(BabblerError):
    """The brain on disk was written with a different schema version."""


# ---------------------------------------------------------------------------
# SQLite retry -- another process (a learn job next to a running server) can
# hold the write lock longer than the connection timeout.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def _seq_params(seq) -> Tuple[str, list]:
    """Return an IN () placeholder list and its parameters for seq."""
    items = list(seq)
    return "(" + ",".join("?" * len(items)) + ")", items


class SQLiteGraph:
    """A special-purpose graph stored in a sqlite3 database.

    Nodes are ``order``-tuples of token ids, edges are observed transitions
    between two nodes. Random sampling goes through ``self.random`` so a
    seeded generator makes walks reproducible.
    """

    def __init__(self, db_path, rng: Optional[random.Random] = None, run_migrations: bool = True):
        self.db_path = Path(db_path)
        self.random = rng or random.Random()
        self.order: Optional[int] = None
        self._conn = self._connect()

        if self.is_initted():
            version = self.get_info_text("version")
            if version != SCHEMA_VERSION:
                self._conn.close()
                raise IncompatibleStoreVersion(f"cannot read a version {version} brain")
            if run_migrations:
                self._run_migrations()
            self._set_order(int(self.get_info_text("order")))
            self._tune()

    def _connect(self) -> sqlite3.Connection:
        """Open the database connection."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=30,
            check_same_thread=False,
        )
        return conn

    def _tune(self) -> None:
        """Apply the speed-for-reliability pragmas used for learning."""
        c = self._conn
        # Disable the SQLite cache. Its pages tend to get swapped out, even
        # if the database file is in buffer cache.
        c.execute("PRAGMA cache_size=0")
        c.execute("PRAGMA page_size=4096")
        c.execute("PRAGMA journal_mode=truncate")
        c.execute("PRAGMA temp_store=memory")
        c.execute("PRAGMA synchronous=OFF")

    def _set_order(self, order: int) -> None:
        self.order = order
        self._all_tokens = ",".join(f"token{i}_id" for i in range(order))
        self._all_tokens_args = " AND ".join(f"token{i}_id = ?" for i in range(order))
        self._all_tokens_q = ",".join("?" * order)
        self._last_token = f"token{order - 1}_id"

    def _run_sql(self, sql, params=None):
        """Run SQL with retry on 'database is locked'."""
        if params is not None:
            return _retry_on_locked(self._conn.execute, sql, params)
        return _retry_on_locked(self._conn.execute, sql)

    def commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Database close failed: %s", e)

    def set_journal_mode(self, mode: str) -> None:
        """Switch journal mode. Commits first, sqlite refuses inside a transaction."""
        self.commit()
        self._run_sql(f"PRAGMA journal_mode={mode}")

    @contextmanager
    def _atomic(self, name: str) -> Iterator[None]:
        """Run a group of statements as one unit inside a SAVEPOINT."""
        if not self._conn.in_transaction:
            self._run_sql("BEGIN")
        self._run_sql(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            self._conn.execute(f"ROLLBACK TO {name}")
            self._conn.execute(f"RELEASE {name}")
            raise
        self._run_sql(f"RELEASE {name}")

    # ------------------------------------------------------------------
    # Info
    # ------------------------------------------------------------------

    def is_initted(self) -> bool:
        try:
            self.get_info_text("order")
            return True
        except sqlite3.OperationalError:
            return False

    def set_info_text(self, attribute: str, text: Optional[str]) -> None:
        """Set an info attribute. A text of None deletes it."""
        if text is None:
            self._run_sql("DELETE FROM info WHERE attribute = ?", (attribute,))
            return
        cur = self._run_sql("UPDATE info SET text = ? WHERE attribute = ?", (text, attribute))
        if cur.rowcount == 0:
            self._run_sql("INSERT INTO info (attribute, text) VALUES (?, ?)", (attribute, text))

    def get_info_text(self, attribute: str, default: Optional[str] = None) -> Optional[str]:
        row = self._run_sql("SELECT text FROM info WHERE attribute = ?", (attribute,)).fetchone()
        if row is None:
            return default
        return row[0]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def get_token_by_text(self, text: str, create: bool = False, stemmer=None) -> Optional[int]:
        """Look up a token id by its text, optionally creating it."""
        row = self._run_sql("SELECT id FROM tokens WHERE text = ?", (text,)).fetchone()
        if row is not None:
            return row[0]
        if not create:
            return None

        is_word = bool(_WORD_RE.search(text))
        cur = self._run_sql("INSERT INTO tokens (text, is_word) VALUES (?, ?)", (text, is_word))
        token_id = cur.lastrowid

        if stemmer is not None:
            stem = stemmer.stem(text)
            if stem and stem.strip():
                self.insert_stem(token_id, stem)

        return token_id

    def insert_stem(self, token_id: int, stem: str) -> None:
        self._run_sql("INSERT INTO token_stems (token_id, stem) VALUES (?, ?)", (token_id, stem))

    def get_token_stem_ids(self, stem: str) -> List[int]:
        rows = self._run_sql("SELECT token_id FROM token_stems WHERE stem = ?", (stem,)).fetchall()
        return [row[0] for row in rows]

    def get_word_tokens(self, token_ids: Iterable[int]) -> List[int]:
        """Return the subset of token_ids flagged as words."""
        expr, params = _seq_params(token_ids)
        if not params:
            return []
        rows = self._run_sql(f"SELECT id FROM tokens WHERE id IN {expr} AND is_word = 1", params)
        return [row[0] for row in rows]

    def get_tokens(self, token_ids: Iterable[int]) -> List[int]:
        """Return the subset of token_ids that exist."""
        expr, params = _seq_params(token_ids)
        if not params:
            return []
        rows = self._run_sql(f"SELECT id FROM tokens WHERE id IN {expr}", params)
        return [row[0] for row in rows]

    def get_random_token(self) -> Optional[int]:
        """Uniformly sample a token id, excluding the end-of-chain token."""
        row = self._run_sql("SELECT id FROM tokens WHERE text = ?", (END_TOKEN,)).fetchone()
        end_token_id = row[0] if row else 0

        count = self._run_sql("SELECT count(*) FROM tokens WHERE id > ?", (end_token_id,)).fetchone()[0]
        if not count:
            return None
        offset = self.random.randrange(count)
        row = self._run_sql(
            "SELECT id FROM tokens WHERE id > ? ORDER BY id LIMIT 1 OFFSET ?",
            (end_token_id, offset),
        ).fetchone()
        return row[0] if row else None

    def token_count(self) -> int:
        row = self._run_sql("SELECT COUNT(*) FROM tokens").fetchone()
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def get_node_by_tokens(self, tokens) -> int:
        """Return the node id for a context, creating the node if needed."""
        params = tuple(tokens)[:self.order]
        row = self._run_sql(f"SELECT id FROM nodes WHERE {self._all_tokens_args}", params).fetchone()
        if row is not None:
            return row[0]

        # if not found, create the node
        q = f"INSERT INTO nodes (count, {self._all_tokens}) VALUES (0, {self._all_tokens_q})"
        return self._run_sql(q, params).lastrowid

    def get_node_count(self, node_id: int) -> Optional[int]:
        row = self._run_sql("SELECT count FROM nodes WHERE id = ?", (node_id,)).fetchone()
        return row[0] if row else None

    def get_random_node_with_token(self, token_id: int) -> Optional[int]:
        """Uniformly sample a node whose first context slot is token_id."""
        count = self._run_sql("SELECT count(*) FROM nodes WHERE token0_id = ?", (token_id,)).fetchone()[0]
        if not count:
            return None
        offset = self.random.randrange(count)
        row = self._run_sql(
            "SELECT id FROM nodes WHERE token0_id = ? ORDER BY id LIMIT 1 OFFSET ?",
            (token_id, offset),
        ).fetchone()
        return row[0] if row else None

    def node_count(self) -> int:
        row = self._run_sql("SELECT COUNT(*) FROM nodes").fetchone()
        return row[0] if row else 0

    def _adjust_node_count(self, node_id: int, delta: int) -> None:
        self._run_sql("UPDATE nodes SET count = count + ? WHERE id = ?", (delta, node_id))

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(self, prev_node: int, next_node: int, has_space: bool) -> None:
        """Record one transition from prev_node to next_node.

        Increments the matching edge or inserts it with count 1, and bumps
        next_node's count by the same amount. Both writes succeed or neither.
        """
        with self._atomic("add_edge"):
            cur = self._run_sql(
                "UPDATE edges SET count = count + 1 "
                "WHERE prev_node = ? AND next_node = ? AND has_space = ?",
                (prev_node, next_node, has_space),
            )
            if cur.rowcount == 0:
                self._run_sql(
                    "INSERT INTO edges (prev_node, next_node, has_space, count) VALUES (?, ?, ?, 1)",
                    (prev_node, next_node, has_space),
                )
            self._adjust_node_count(next_node, 1)

    def get_edge_logprob(self, edge_id: int) -> float:
        """Log2 probability of taking this edge out of its prev node.

        Each edge goes from an n-gram node (word1, word2, word3) to another
        (word2, word3, word4):
        P(word4|word1,word2,word3) = count(edge_id) / count(prev_node_id)
        """
        row = self._run_sql(
            "SELECT edges.count, nodes.count FROM edges, nodes "
            "WHERE edges.id = ? AND edges.prev_node = nodes.id",
            (edge_id,),
        ).fetchone()
        edge_count, node_count = row
        return math.log2(edge_count) - math.log2(node_count)

    def has_space(self, edge_id: int) -> bool:
        row = self._run_sql("SELECT has_space FROM edges WHERE id = ?", (edge_id,)).fetchone()
        return bool(row[0])

    def get_text_by_edge(self, edge_id: int) -> Tuple[str, bool]:
        """Return the trailing token text of the edge's prev node and its space flag."""
        row = self._run_sql(
            f"SELECT tokens.text, edges.has_space FROM nodes, edges, tokens "
            f"WHERE edges.id = ? AND edges.prev_node = nodes.id AND nodes.{self._last_token} = tokens.id",
            (edge_id,),
        ).fetchone()
        return row[0], bool(row[1])

    def edge_count(self) -> int:
        row = self._run_sql("SELECT COUNT(*) FROM edges").fetchone()
        return row[0] if row else 0

    def search_random_walk(self, start_id: int, end_id: int, direction: bool) -> Iterator[List[int]]:
        """Walk once randomly from start_id to end_id.

        direction True follows edges forward (prev_node -> next_node), False
        walks them backward. Yields the edge ids in walk order when end_id is
        reached. A node with no edges in that direction ends the walk without
        output.
        """
        if direction:
            count_q = "SELECT count(*) FROM edges WHERE prev_node = ?"
            pick_q = "SELECT id, next_node FROM edges WHERE prev_node = ? ORDER BY id LIMIT 1 OFFSET ?"
        else:
            count_q = "SELECT count(*) FROM edges WHERE next_node = ?"
            pick_q = "SELECT id, prev_node FROM edges WHERE next_node = ? ORDER BY id LIMIT 1 OFFSET ?"

        path: List[int] = []
        cur = start_id
        while True:
            count = self._run_sql(count_q, (cur,)).fetchone()[0]
            if not count:
                return
            rowid, nxt = self._run_sql(pick_q, (cur, self.random.randrange(count))).fetchone()
            path.append(rowid)
            if nxt == end_id:
                yield path
                return
            cur = nxt

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def init(self, order: int, tokenizer: str, run_migrations: bool = True) -> None:
        """Create the brain schema and record its order, tokenizer and version."""
        c = self._conn

        logger.debug("Creating table: info")
        c.execute("""
            CREATE TABLE info (
                attribute TEXT NOT NULL PRIMARY KEY,
                text TEXT NOT NULL)
        """)

        logger.debug("Creating table: tokens")
        c.execute("""
            CREATE TABLE tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                text TEXT UNIQUE NOT NULL,
                is_word INTEGER NOT NULL)
        """)

        logger.debug("Creating table: token_stems")
        c.execute("""
            CREATE TABLE token_stems (
                token_id INTEGER,
                stem TEXT NOT NULL)
        """)

        token_cols = ",\n                ".join(
            f"token{i}_id INTEGER REFERENCES token(id)" for i in range(order)
        )
        logger.debug("Creating table: nodes")
        c.execute(f"""
            CREATE TABLE nodes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                count INTEGER NOT NULL,
                {token_cols})
        """)

        logger.debug("Creating table: edges")
        c.execute("""
            CREATE TABLE edges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                prev_node INTEGER NOT NULL REFERENCES nodes(id),
                next_node INTEGER NOT NULL REFERENCES nodes(id),
                count INTEGER NOT NULL,
                has_space INTEGER NOT NULL)
        """)

        if run_migrations:
            self._run_migrations()

        self._set_order(order)
        self.set_info_text("order", str(order))
        self.set_info_text("tokenizer", tokenizer)
        self.set_info_text("version", SCHEMA_VERSION)
        # the end token always takes the first id
        self.get_token_by_text(END_TOKEN, create=True)
        self.commit()

        self.ensure_indexes()
        self.commit()

    def drop_reply_indexes(self) -> None:
        """Swap the reply indexes for a narrow index suited to bulk inserts."""
        c = self._conn
        c.execute("DROP INDEX IF EXISTS edges_all_next")
        c.execute("DROP INDEX IF EXISTS edges_all_prev")
        c.execute("""
            CREATE INDEX IF NOT EXISTS learn_index ON edges
                (prev_node, next_node)
        """)

    def ensure_indexes(self) -> None:
        c = self._conn
        # remove the temporary learning index if it exists
        c.execute("DROP INDEX IF EXISTS learn_index")
        c.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS nodes_token_ids ON nodes
                ({self._all_tokens})
        """)
        c.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS edges_all_next ON edges
                (next_node, prev_node, has_space, count)
        """)
        c.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS edges_all_prev ON edges
                (prev_node, next_node, has_space, count)
        """)

    def delete_token_stems(self) -> None:
        c = self._conn
        # drop the two stem indexes
        c.execute("DROP INDEX IF EXISTS token_stems_stem")
        c.execute("DROP INDEX IF EXISTS token_stems_id")
        # delete all the existing stems from the table
        self._run_sql("DELETE FROM token_stems")

    def update_token_stems(self, stemmer) -> None:
        """Stem every known token and index the results."""
        start = _time.monotonic()
        rows = self._run_sql("SELECT id, text FROM tokens").fetchall()
        stemmed = 0
        for token_id, text in rows:
            stem = stemmer.stem(text)
            if stem and stem.strip():
                self.insert_stem(token_id, stem)
                stemmed += 1
        logger.info("Stemmed %d of %d tokens in %.2fs", stemmed, len(rows), _time.monotonic() - start)

        self._conn.execute("CREATE INDEX IF NOT EXISTS token_stems_id ON token_stems (token_id)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS token_stems_stem ON token_stems (stem)")

    def _run_migrations(self) -> None:
        c = self._conn

        # tokens_text was an index on tokens.text, redundant since tokens.text
        # is declared UNIQUE and sqlite indexes UNIQUE columns itself
        c.execute("DROP INDEX IF EXISTS tokens_text")

        for trigger in _LEGACY_COUNT_TRIGGERS:
            exists = c.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'trigger' AND name = ?", (trigger,)
            ).fetchone()
            if exists:
                c.execute(f"DROP TRIGGER {trigger}")
                logger.info("Dropped legacy node count trigger %s", trigger)
        c.commit()
