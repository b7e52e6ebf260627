"""
Database module for cl-liquidity-ops

SQLite persistence for swap records:
- Loop out swaps (with their outgoing channel restriction)
- Loop in swaps (with their last hop restriction)

The swap executor writes these records; the liquidity manager only lists
them to work out which channels are busy or backing off.
"""

import json
import os
import sqlite3
import threading
import time
from typing import Dict, List, Optional, Any

from .errors import UpstreamError
from .swaps import LoopInSwap, LoopOutSwap, SwapState


class Database:
    """
    SQLite database manager for swap records.
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None
        self._conn_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        with self._conn_lock:
            if self._conn is None:
                directory = os.path.dirname(self.db_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)

                self._conn = sqlite3.connect(
                    self.db_path,
                    check_same_thread=False,
                    isolation_level=None  # Autocommit mode
                )
                self._conn.row_factory = sqlite3.Row
            return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS loop_out_swaps (
                swap_hash TEXT PRIMARY KEY,
                amount_sat INTEGER NOT NULL,
                state TEXT NOT NULL,
                outgoing_chan_set TEXT NOT NULL DEFAULT '[]',  -- JSON list of integer scids
                last_update INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS loop_in_swaps (
                swap_hash TEXT PRIMARY KEY,
                amount_sat INTEGER NOT NULL,
                state TEXT NOT NULL,
                last_hop TEXT,  -- NULL = unrestricted
                last_update INTEGER NOT NULL
            )
        """)

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_loop_out_state ON loop_out_swaps(state)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_loop_in_state ON loop_in_swaps(state)"
        )

        self.plugin.log("Database initialized successfully")

    def close(self):
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # =========================================================================
    # Loop Out
    # =========================================================================

    def upsert_loop_out(self, swap: LoopOutSwap) -> None:
        """Insert or update a loop out swap record."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO loop_out_swaps (swap_hash, amount_sat, state, outgoing_chan_set, last_update)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(swap_hash) DO UPDATE SET
                amount_sat = excluded.amount_sat,
                state = excluded.state,
                outgoing_chan_set = excluded.outgoing_chan_set,
                last_update = excluded.last_update
        """, (
            swap.swap_hash,
            swap.amount_sat,
            swap.state.value,
            json.dumps(list(swap.outgoing_chan_set)),
            swap.last_update or int(time.time()),
        ))

    def list_loop_out(self) -> List[LoopOutSwap]:
        """
        List every stored loop out swap.

        Raises:
            UpstreamError: The swap store could not be read
        """
        try:
            rows = self._get_connection().execute(
                "SELECT * FROM loop_out_swaps ORDER BY last_update"
            ).fetchall()
            return [self._row_to_loop_out(row) for row in rows]
        except (sqlite3.Error, ValueError) as e:
            self.plugin.log(f"Error listing loop out swaps: {e}", level='error')
            raise UpstreamError("list_loop_out", str(e)) from e

    def _row_to_loop_out(self, row) -> LoopOutSwap:
        return LoopOutSwap(
            swap_hash=row['swap_hash'],
            amount_sat=row['amount_sat'],
            state=SwapState(row['state']),
            outgoing_chan_set=[int(c) for c in json.loads(row['outgoing_chan_set'] or '[]')],
            last_update=row['last_update'],
        )

    # =========================================================================
    # Loop In
    # =========================================================================

    def upsert_loop_in(self, swap: LoopInSwap) -> None:
        """Insert or update a loop in swap record."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO loop_in_swaps (swap_hash, amount_sat, state, last_hop, last_update)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(swap_hash) DO UPDATE SET
                amount_sat = excluded.amount_sat,
                state = excluded.state,
                last_hop = excluded.last_hop,
                last_update = excluded.last_update
        """, (
            swap.swap_hash,
            swap.amount_sat,
            swap.state.value,
            swap.last_hop,
            swap.last_update or int(time.time()),
        ))

    def list_loop_in(self) -> List[LoopInSwap]:
        """
        List every stored loop in swap.

        Raises:
            UpstreamError: The swap store could not be read
        """
        try:
            rows = self._get_connection().execute(
                "SELECT * FROM loop_in_swaps ORDER BY last_update"
            ).fetchall()
            return [
                LoopInSwap(
                    swap_hash=row['swap_hash'],
                    amount_sat=row['amount_sat'],
                    state=SwapState(row['state']),
                    last_hop=row['last_hop'],
                    last_update=row['last_update'],
                )
                for row in rows
            ]
        except (sqlite3.Error, ValueError) as e:
            self.plugin.log(f"Error listing loop in swaps: {e}", level='error')
            raise UpstreamError("list_loop_in", str(e)) from e

    def get_swap_counts(self) -> Dict[str, Dict[str, int]]:
        """Count stored swaps by state, for status reporting."""
        conn = self._get_connection()
        counts: Dict[str, Dict[str, Any]] = {}
        for table, key in (("loop_out_swaps", "loop_out"), ("loop_in_swaps", "loop_in")):
            rows = conn.execute(
                f"SELECT state, COUNT(*) AS n FROM {table} GROUP BY state"
            ).fetchall()
            counts[key] = {row['state']: row['n'] for row in rows}
        return counts
