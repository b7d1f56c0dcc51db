import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from onelaunch.core.auction.clearing import BidSnapshot, ClearingResult, LaunchSnapshot
from onelaunch.core.auction.models import AuctionSettlement, Bid, Launch, LaunchStatus, OrderStatus
from onelaunch.core.errors import ClearingInconsistency, InvalidInput, InvalidState, ReplayRejected, StaleRecord
from onelaunch.core.settlement.batch import BatchExecution
from onelaunch.core.settlement.state import SettlementRecord, SettlementStatus
from onelaunch.utils.logger import get_logger

logger = get_logger("storage.sqlite")


def _int(value: Optional[str]) -> Optional[int]:
    # uint256 amounts are stored as decimal TEXT, they overflow SQLite INTEGER
    return None if value is None else int(value)


def _text(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


class SQLiteAdapter:
    """
    SQLite backend for launch, bid and settlement records.

    Replay protection lives in the schema: order hashes, salts and
    per-bidder intent nonces are UNIQUE, and a second insert surfaces as
    ReplayRejected. Every bid insert or update bumps the launch's
    bids_version inside the same transaction.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        # Ensure directory exists
        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn_local.conn.execute("PRAGMA foreign_keys=ON;")
        return self._conn_local.conn

    def close(self):
        if hasattr(self._conn_local, "conn"):
            self._conn_local.conn.close()
            del self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS launches (
                    launch_id TEXT PRIMARY KEY,
                    token_name TEXT NOT NULL,
                    token_symbol TEXT NOT NULL,
                    total_supply TEXT NOT NULL,
                    target_allocation INTEGER NOT NULL,
                    end_time INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    participants INTEGER NOT NULL DEFAULT 0,
                    is_launched INTEGER NOT NULL DEFAULT 0,
                    token_address TEXT,
                    chain_id INTEGER,
                    clearing_price INTEGER,
                    total_raised TEXT NOT NULL DEFAULT '0',
                    auction_controller_address TEXT,
                    bids_version INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    launch_id TEXT NOT NULL REFERENCES launches(launch_id),
                    price INTEGER NOT NULL,
                    quantity INTEGER NOT NULL,
                    wallet_address TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    commitment TEXT,
                    order_hash TEXT,
                    external_order_id TEXT,
                    order_status TEXT NOT NULL DEFAULT 'pending',
                    filled_amount INTEGER NOT NULL DEFAULT 0,
                    transaction_ref TEXT,
                    block_number INTEGER
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bids_launch ON bids(launch_id, order_status);")

            # Signed executor orders
            conn.execute("""
                CREATE TABLE IF NOT EXISTS limit_orders (
                    order_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bid_id TEXT NOT NULL,
                    order_hash TEXT NOT NULL UNIQUE,
                    maker_address TEXT NOT NULL,
                    maker_asset TEXT NOT NULL,
                    taker_asset TEXT NOT NULL,
                    making_amount TEXT NOT NULL,
                    taking_amount TEXT NOT NULL,
                    salt TEXT NOT NULL UNIQUE,
                    expiration INTEGER,
                    signature TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    filled_amount TEXT NOT NULL DEFAULT '0'
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS auction_settlements (
                    settlement_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    launch_id TEXT NOT NULL UNIQUE REFERENCES launches(launch_id),
                    clearing_price INTEGER NOT NULL,
                    total_filled_quantity INTEGER NOT NULL,
                    total_raised_amount TEXT NOT NULL,
                    successful_bids_count INTEGER NOT NULL,
                    settlement_tx_ref TEXT,
                    settlement_block INTEGER,
                    gas_used INTEGER,
                    settled_at INTEGER NOT NULL
                )
            """)

            # Cross-asset intent bids; bid_id is keccak256 of the order signature
            conn.execute("""
                CREATE TABLE IF NOT EXISTS intent_bids (
                    bid_id TEXT PRIMARY KEY,
                    launch_id TEXT NOT NULL REFERENCES launches(launch_id),
                    user_wallet TEXT NOT NULL,
                    bid_token TEXT NOT NULL,
                    bid_token_symbol TEXT,
                    bid_amount TEXT NOT NULL,
                    auction_token TEXT NOT NULL,
                    max_auction_tokens INTEGER NOT NULL,
                    max_effective_price INTEGER NOT NULL,
                    deadline INTEGER NOT NULL,
                    nonce TEXT NOT NULL,
                    expected_output TEXT,
                    intent_signature TEXT NOT NULL,
                    signed_order TEXT NOT NULL,
                    signature TEXT NOT NULL,
                    salt TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'pending',
                    filled_amount INTEGER NOT NULL DEFAULT 0,
                    failure_reason TEXT,
                    external_order_hash TEXT,
                    created_at INTEGER NOT NULL,
                    UNIQUE (user_wallet, nonce)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_intent_launch ON intent_bids(launch_id, status);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settlement_records (
                    record_id TEXT PRIMARY KEY,
                    bid_id TEXT NOT NULL,
                    launch_id TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (bid_id, attempt)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_launch ON settlement_records(launch_id);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settlement_batches (
                    batch_id TEXT PRIMARY KEY,
                    launch_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    completed_at INTEGER NOT NULL
                )
            """)

    # =========================================================================
    # Helpers
    # =========================================================================

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        conn = self._get_conn()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()

    @staticmethod
    def _replay_error(error: sqlite3.IntegrityError, values: Dict[str, Any]) -> Exception:
        message = str(error)
        if not message.startswith("UNIQUE constraint failed"):
            # Foreign key and NOT NULL violations are caller errors
            return InvalidInput(message)
        # "UNIQUE constraint failed: intent_bids.user_wallet, intent_bids.nonce" -> nonce
        key = message.split(":", 1)[1].split(",")[-1].strip().split(".")[-1]
        return ReplayRejected(key, values.get(key, message))

    def _bump_version(self, conn: sqlite3.Connection, launch_id: str):
        conn.execute("UPDATE launches SET bids_version = bids_version + 1 WHERE launch_id = ?", (launch_id,))

    # =========================================================================
    # Launches
    # =========================================================================

    def insert_launch(self, launch: Launch):
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    """INSERT INTO launches (launch_id, token_name, token_symbol, total_supply,
                       target_allocation, end_time, status, participants, is_launched, token_address,
                       chain_id, clearing_price, total_raised, auction_controller_address,
                       bids_version, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        launch.launch_id, launch.token_name, launch.token_symbol, str(launch.total_supply),
                        launch.target_allocation, launch.end_time, launch.status.value, launch.participants,
                        int(launch.is_launched), launch.token_address, launch.chain_id, launch.clearing_price,
                        str(launch.total_raised), launch.auction_controller_address, launch.bids_version,
                        launch.created_at,
                    )
                )
        except sqlite3.IntegrityError as e:
            raise self._replay_error(e, {"launch_id": launch.launch_id})

    def get_launch(self, launch_id: str) -> Optional[Launch]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM launches WHERE launch_id = ?", (launch_id,)).fetchone()
        return self._row_to_launch(row) if row else None

    def list_launches(self, status: Optional[LaunchStatus] = None) -> List[Launch]:
        conn = self._get_conn()
        if status is None:
            cursor = conn.execute("SELECT * FROM launches ORDER BY created_at ASC")
        else:
            cursor = conn.execute(
                "SELECT * FROM launches WHERE status = ? ORDER BY created_at ASC", (status.value,)
            )
        return [self._row_to_launch(row) for row in cursor]

    @staticmethod
    def _row_to_launch(row: sqlite3.Row) -> Launch:
        return Launch(
            launch_id=row["launch_id"],
            token_name=row["token_name"],
            token_symbol=row["token_symbol"],
            total_supply=int(row["total_supply"]),
            target_allocation=row["target_allocation"],
            end_time=row["end_time"],
            status=LaunchStatus(row["status"]),
            clearing_price=row["clearing_price"],
            total_raised=int(row["total_raised"]),
            participants=row["participants"],
            is_launched=bool(row["is_launched"]),
            token_address=row["token_address"],
            chain_id=row["chain_id"],
            auction_controller_address=row["auction_controller_address"],
            bids_version=row["bids_version"],
            created_at=row["created_at"],
        )

    # =========================================================================
    # Bids
    # =========================================================================

    def insert_bid(self, bid: Bid):
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    """INSERT INTO bids (bid_id, launch_id, price, quantity, wallet_address, created_at,
                       commitment, order_hash, external_order_id, order_status, filled_amount,
                       transaction_ref, block_number)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        bid.bid_id, bid.launch_id, bid.price, bid.quantity, bid.bidder, bid.created_at,
                        bid.commitment, bid.order_hash, bid.external_order_id, bid.order_status.value,
                        bid.filled_amount, bid.transaction_ref, bid.block_number,
                    )
                )
                self._bump_version(conn, bid.launch_id)
        except sqlite3.IntegrityError as e:
            raise self._replay_error(e, {"bid_id": bid.bid_id})

    def update_bid_terms(self, bid_id: str, price: int, quantity: int, status: OrderStatus):
        """Write revealed terms. Only sealed, pending bids are updated."""
        conn = self._get_conn()
        with conn:
            row = conn.execute("SELECT launch_id FROM bids WHERE bid_id = ?", (bid_id,)).fetchone()
            if row is None:
                raise InvalidInput(f"unknown bid {bid_id}")
            conn.execute(
                "UPDATE bids SET price = ?, quantity = ?, order_status = ? WHERE bid_id = ?",
                (price, quantity, status.value, bid_id)
            )
            self._bump_version(conn, row["launch_id"])

    def update_bid_status(self, bid_id: str, status: OrderStatus, expected: Sequence[OrderStatus] = ()) -> bool:
        """
        Set a bid's order status.

        With `expected`, the update only happens from one of those states
        and the return value says whether it did.
        """
        conn = self._get_conn()
        with conn:
            row = conn.execute("SELECT launch_id, order_status FROM bids WHERE bid_id = ?", (bid_id,)).fetchone()
            if row is None:
                raise InvalidInput(f"unknown bid {bid_id}")
            if expected and OrderStatus(row["order_status"]) not in expected:
                return False
            conn.execute("UPDATE bids SET order_status = ? WHERE bid_id = ?", (status.value, bid_id))
            self._bump_version(conn, row["launch_id"])
        return True

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM bids WHERE bid_id = ?", (bid_id,)).fetchone()
        return self._row_to_bid(row) if row else None

    def list_bids(self, launch_id: str, status: Optional[OrderStatus] = None) -> List[Bid]:
        conn = self._get_conn()
        if status is None:
            cursor = conn.execute(
                "SELECT * FROM bids WHERE launch_id = ? ORDER BY created_at ASC, bid_id ASC", (launch_id,)
            )
        else:
            cursor = conn.execute(
                "SELECT * FROM bids WHERE launch_id = ? AND order_status = ? ORDER BY created_at ASC, bid_id ASC",
                (launch_id, status.value)
            )
        return [self._row_to_bid(row) for row in cursor]

    @staticmethod
    def _row_to_bid(row: sqlite3.Row) -> Bid:
        return Bid(
            bid_id=row["bid_id"],
            launch_id=row["launch_id"],
            bidder=row["wallet_address"],
            price=row["price"],
            quantity=row["quantity"],
            created_at=row["created_at"],
            order_status=OrderStatus(row["order_status"]),
            filled_amount=row["filled_amount"],
            commitment=row["commitment"],
            order_hash=row["order_hash"],
            external_order_id=row["external_order_id"],
            transaction_ref=row["transaction_ref"],
            block_number=row["block_number"],
        )

    def bid_stats(self, launch_id: str) -> Dict[str, Any]:
        """Counts by status plus quantity and price aggregates over revealed bids."""
        conn = self._get_conn()
        counts = {status.value: 0 for status in OrderStatus}
        for row in conn.execute(
            "SELECT order_status, COUNT(*) AS cnt FROM bids WHERE launch_id = ? GROUP BY order_status",
            (launch_id,)
        ):
            counts[row["order_status"]] = row["cnt"]

        agg = conn.execute(
            """SELECT COUNT(*) AS cnt, COUNT(DISTINCT wallet_address) AS bidders,
                      COALESCE(SUM(quantity), 0) AS total_quantity,
                      MIN(price) AS min_price, MAX(price) AS max_price,
                      COALESCE(SUM(price * quantity), 0) AS notional
               FROM bids
               WHERE launch_id = ? AND quantity > 0 AND order_status != 'cancelled'""",
            (launch_id,)
        ).fetchone()

        total_quantity = agg["total_quantity"]
        return {
            "launch_id": launch_id,
            "total_bids": sum(counts.values()),
            "by_status": counts,
            "unique_bidders": agg["bidders"],
            "total_quantity": total_quantity,
            "min_price": agg["min_price"],
            "max_price": agg["max_price"],
            # Quantity-weighted, in micro-units
            "average_price": agg["notional"] // total_quantity if total_quantity else None,
        }

    # =========================================================================
    # Limit Orders
    # =========================================================================

    def insert_limit_order(self, order: Dict[str, Any]):
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    """INSERT INTO limit_orders (bid_id, order_hash, maker_address, maker_asset, taker_asset,
                       making_amount, taking_amount, salt, expiration, signature, status)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        order["bid_id"], order["order_hash"], order["maker_address"], order["maker_asset"],
                        order["taker_asset"], str(order["making_amount"]), str(order["taking_amount"]),
                        str(order["salt"]), order.get("expiration"), order["signature"],
                        order.get("status", "pending"),
                    )
                )
        except sqlite3.IntegrityError as e:
            raise self._replay_error(e, {"order_hash": order["order_hash"], "salt": order["salt"]})

    def get_limit_order(self, order_hash: str) -> Optional[Dict[str, Any]]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM limit_orders WHERE order_hash = ?", (order_hash,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        for key in ("making_amount", "taking_amount", "salt", "filled_amount"):
            data[key] = _int(data[key])
        return data

    # =========================================================================
    # Intent Bids
    # =========================================================================

    def insert_intent_bid(self, bid: Dict[str, Any], order: Dict[str, Any]):
        """Insert an intent bid and its limit order in one transaction."""
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    """INSERT INTO intent_bids (bid_id, launch_id, user_wallet, bid_token, bid_token_symbol,
                       bid_amount, auction_token, max_auction_tokens, max_effective_price, deadline, nonce,
                       expected_output, intent_signature, signed_order, signature, salt, status, external_order_hash,
                       created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        bid["bid_id"], bid["launch_id"], bid["user_wallet"], bid["bid_token"],
                        bid.get("bid_token_symbol"), str(bid["bid_amount"]), bid["auction_token"],
                        bid["max_auction_tokens"], bid["max_effective_price"], bid["deadline"],
                        str(bid["nonce"]), _text(bid.get("expected_output")), bid["intent_signature"],
                        json.dumps(bid["signed_order"]), bid["signature"], str(bid["salt"]),
                        bid.get("status", OrderStatus.ACTIVE.value), order["order_hash"], bid["created_at"],
                    )
                )
                conn.execute(
                    """INSERT INTO limit_orders (bid_id, order_hash, maker_address, maker_asset, taker_asset,
                       making_amount, taking_amount, salt, expiration, signature, status)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        bid["bid_id"], order["order_hash"], order["maker_address"], order["maker_asset"],
                        order["taker_asset"], str(order["making_amount"]), str(order["taking_amount"]),
                        str(order["salt"]), order.get("expiration"), order["signature"], "pending",
                    )
                )
                self._bump_version(conn, bid["launch_id"])
        except sqlite3.IntegrityError as e:
            values = {
                "bid_id": bid["bid_id"],
                "salt": bid["salt"],
                "nonce": bid["nonce"],
                "user_wallet": bid["user_wallet"],
                "order_hash": order["order_hash"],
            }
            raise self._replay_error(e, values)

    def list_intent_bids(self, launch_id: str, status: Optional[OrderStatus] = None) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        if status is None:
            cursor = conn.execute(
                "SELECT * FROM intent_bids WHERE launch_id = ? ORDER BY created_at ASC, bid_id ASC", (launch_id,)
            )
        else:
            cursor = conn.execute(
                "SELECT * FROM intent_bids WHERE launch_id = ? AND status = ? ORDER BY created_at ASC, bid_id ASC",
                (launch_id, status.value)
            )
        return [self._row_to_intent_bid(row) for row in cursor]

    @staticmethod
    def _row_to_intent_bid(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["bid_amount"] = _int(data["bid_amount"])
        data["nonce"] = _int(data["nonce"])
        data["salt"] = _int(data["salt"])
        data["expected_output"] = _int(data["expected_output"])
        data["signed_order"] = json.loads(data["signed_order"])
        return data

    # =========================================================================
    # Clearing
    # =========================================================================

    def capture_snapshot(self, launch_id: str, bids: Optional[Sequence[BidSnapshot]] = None) -> LaunchSnapshot:
        """
        Read the active bids of a launch and its bids_version in one
        read transaction.

        With `bids`, only the version and target are read and the given
        bids are used as-is (intent clearing prices its own bids).
        """
        conn = self._get_conn()
        with conn:
            conn.execute("BEGIN")
            row = conn.execute(
                "SELECT target_allocation, bids_version, status FROM launches WHERE launch_id = ?",
                (launch_id,)
            ).fetchone()
            if row is None:
                raise InvalidInput(f"unknown launch {launch_id}")
            if row["status"] != LaunchStatus.ACTIVE.value:
                raise InvalidState(f"launch {launch_id} is {row['status']}")

            if bids is None:
                bids = [
                    BidSnapshot(r["bid_id"], r["wallet_address"], r["price"], r["quantity"], r["created_at"])
                    for r in conn.execute(
                        "SELECT * FROM bids WHERE launch_id = ? AND order_status = 'active'", (launch_id,)
                    )
                ]

        return LaunchSnapshot(
            launch_id=launch_id,
            target_allocation=row["target_allocation"],
            version=row["bids_version"],
            bids=tuple(bids),
        )

    def apply_clearing(
        self,
        result: ClearingResult,
        settlement: Optional[AuctionSettlement],
        unfilled_ids: Sequence[str] = (),
        failure_reasons: Optional[Mapping[str, str]] = None,
    ):
        """
        Write a clearing result atomically.

        Re-checks bids_version and status under BEGIN IMMEDIATE; if the
        launch moved on since the snapshot nothing is written and
        ClearingInconsistency is raised.

        Winners become filled, every id in result.losing_bid_ids and
        unfilled_ids becomes expired, the launch becomes completed (or
        expired when nothing was filled). Expired intent bids get their
        failure_reason from failure_reasons, or "outbid" for losers of
        the clearing itself.
        """
        failure_reasons = failure_reasons or {}
        with self._immediate() as conn:
            row = conn.execute(
                "SELECT bids_version, status FROM launches WHERE launch_id = ?", (result.launch_id,)
            ).fetchone()
            if row is None:
                raise InvalidInput(f"unknown launch {result.launch_id}")
            if row["status"] != LaunchStatus.ACTIVE.value or row["bids_version"] != result.version:
                raise ClearingInconsistency(result.launch_id, result.version, row["bids_version"])

            for fill in result.fills:
                for table, status_col in (("bids", "order_status"), ("intent_bids", "status")):
                    conn.execute(
                        f"UPDATE {table} SET {status_col} = 'filled', filled_amount = ? "
                        f"WHERE bid_id = ? AND launch_id = ?",
                        (fill.filled, fill.bid_id, result.launch_id)
                    )

            outbid = set(result.losing_bid_ids)
            for bid_id in list(result.losing_bid_ids) + list(unfilled_ids):
                conn.execute(
                    "UPDATE bids SET order_status = 'expired' WHERE bid_id = ? AND launch_id = ?",
                    (bid_id, result.launch_id)
                )
                reason = failure_reasons.get(bid_id) or ("outbid" if bid_id in outbid else None)
                conn.execute(
                    "UPDATE intent_bids SET status = 'expired', failure_reason = ? WHERE bid_id = ? AND launch_id = ?",
                    (reason, bid_id, result.launch_id)
                )

            participants = len({fill.bidder for fill in result.fills})
            if result.is_empty:
                conn.execute(
                    """UPDATE launches SET status = 'expired', clearing_price = NULL, total_raised = '0',
                       bids_version = bids_version + 1 WHERE launch_id = ?""",
                    (result.launch_id,)
                )
            else:
                conn.execute(
                    """UPDATE launches SET status = 'completed', is_launched = 1, clearing_price = ?,
                       total_raised = ?, participants = ?, bids_version = bids_version + 1
                       WHERE launch_id = ?""",
                    (result.clearing_price, str(result.total_raised), participants, result.launch_id)
                )

            if settlement is not None:
                try:
                    conn.execute(
                        """INSERT INTO auction_settlements (launch_id, clearing_price, total_filled_quantity,
                           total_raised_amount, successful_bids_count, settlement_tx_ref, settlement_block,
                           gas_used, settled_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            settlement.launch_id, settlement.clearing_price, settlement.total_filled_quantity,
                            str(settlement.total_raised_amount), settlement.successful_bids_count,
                            settlement.settlement_tx_ref, settlement.settlement_block, settlement.gas_used,
                            settlement.settled_at,
                        )
                    )
                except sqlite3.IntegrityError as e:
                    raise self._replay_error(e, {"launch_id": settlement.launch_id})

    def get_auction_settlement(self, launch_id: str) -> Optional[AuctionSettlement]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM auction_settlements WHERE launch_id = ?", (launch_id,)).fetchone()
        if row is None:
            return None
        return AuctionSettlement(
            launch_id=row["launch_id"],
            clearing_price=row["clearing_price"],
            total_filled_quantity=row["total_filled_quantity"],
            total_raised_amount=int(row["total_raised_amount"]),
            successful_bids_count=row["successful_bids_count"],
            settlement_tx_ref=row["settlement_tx_ref"],
            settlement_block=row["settlement_block"],
            gas_used=row["gas_used"],
            settled_at=row["settled_at"],
        )

    # =========================================================================
    # Settlement Records
    # =========================================================================

    def insert_settlement_record(self, record: SettlementRecord):
        """Insert a new record. An existing record_id or (bid_id, attempt) is ReplayRejected."""
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    """INSERT INTO settlement_records (record_id, bid_id, launch_id, attempt, status, data, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record.record_id, record.bid_id, record.launch_id, record.attempt,
                        record.status.value, json.dumps(record.to_dict()), record.updated_at,
                    )
                )
        except sqlite3.IntegrityError as e:
            raise self._replay_error(e, {"record_id": record.record_id, "attempt": record.attempt})

    def update_settlement_record(self, record: SettlementRecord, expected_status: SettlementStatus):
        """
        Write the record's new state only if the stored row is still in
        expected_status. History is kept in the JSON body.

        Raises:
            StaleRecord: the row is missing or another writer moved it
        """
        with self._immediate() as conn:
            cursor = conn.execute(
                "UPDATE settlement_records SET status = ?, data = ?, updated_at = ? "
                "WHERE record_id = ? AND status = ?",
                (
                    record.status.value, json.dumps(record.to_dict()), record.updated_at,
                    record.record_id, expected_status.value,
                )
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT status FROM settlement_records WHERE record_id = ?", (record.record_id,)
                ).fetchone()
                raise StaleRecord(record.record_id, expected_status.value, row["status"] if row else None)

    def get_settlement_record(self, record_id: str) -> Optional[SettlementRecord]:
        conn = self._get_conn()
        row = conn.execute("SELECT data FROM settlement_records WHERE record_id = ?", (record_id,)).fetchone()
        return SettlementRecord.from_dict(json.loads(row["data"])) if row else None

    def list_settlement_records(self, launch_id: str) -> List[SettlementRecord]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT data FROM settlement_records WHERE launch_id = ? ORDER BY bid_id ASC, attempt ASC",
            (launch_id,)
        )
        return [SettlementRecord.from_dict(json.loads(row["data"])) for row in cursor]

    def save_settlement_batch(self, batch: BatchExecution):
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO settlement_batches (batch_id, launch_id, data, completed_at) VALUES (?, ?, ?, ?)",
                    (batch.batch_id, batch.launch_id, json.dumps(batch.to_dict()), batch.completed_at)
                )
        except sqlite3.IntegrityError as e:
            raise self._replay_error(e, {"batch_id": batch.batch_id})

    def list_settlement_batches(self, launch_id: str) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT data FROM settlement_batches WHERE launch_id = ? ORDER BY completed_at ASC", (launch_id,)
        )
        return [json.loads(row["data"]) for row in cursor]
