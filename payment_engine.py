import argparse
import csv
import logging
import os
import sys
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, InvalidOperation, localcontext
from enum import Enum
from typing import Optional

log = logging.getLogger(__name__)

LOG_LEVEL_ENV_VAR = "PAYMENT_ENGINE_LOG"
REPORT_PRECISION = Decimal(".0001")
MAX_CLIENT_ID = 65535
MAX_TX_ID = 4294967295
# keeps running balances well inside the default 28 digit decimal context
MAX_AMOUNT = Decimal("1e15")


class PaymentEngineError(Exception):
    def __init__(self, message, tx_id=None, client_id=None, operation=None, amount=None):
        super().__init__(message)
        self.message = message
        self.tx_id = tx_id
        self.client_id = client_id
        self.operation = operation
        self.amount = amount

    def add_context(self, record):
        # only fills in what the raiser didn't already know
        if self.tx_id is None:
            self.tx_id = record.tx_id
        if self.client_id is None:
            self.client_id = record.client_id
        if self.operation is None:
            self.operation = record.kind.value
        if self.amount is None:
            self.amount = record.amount
        return self

    def __str__(self):
        if self.tx_id is None or self.client_id is None or self.operation is None:
            return self.message
        amount_detail = ""
        if self.amount is not None:
            amount_detail = f" of ${self.amount}"
        return f"tx_id {self.tx_id}, client_id {self.client_id}, failed to apply {self.operation}{amount_detail}: {self.message}"


class TransactionRejected(PaymentEngineError):
    """A business rule refused the record. Logged and skipped, never fatal."""


class AccountLocked(TransactionRejected):
    pass


class InsufficientAvailableFunds(TransactionRejected):
    pass


class InsufficientHeldFunds(TransactionRejected):
    pass


class TransactionNotFound(TransactionRejected):
    pass


class ClientMismatch(TransactionRejected):
    pass


class NotADeposit(TransactionRejected):
    pass


class AlreadyDisputed(TransactionRejected):
    pass


class NotDisputed(TransactionRejected):
    pass


class ProcessingAborted(PaymentEngineError):
    """The input can't be trusted any further. Aborts the whole run."""


class DuplicateTransactionId(ProcessingAborted):
    pass


class MissingAmount(ProcessingAborted):
    pass


class LookupFailure(ProcessingAborted):
    pass


class Kind(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    CHARGEBACK = "chargeback"


# only these ever get an id of their own in the index
ACCEPTED_KINDS = frozenset({Kind.DEPOSIT, Kind.WITHDRAWAL})


@dataclass(frozen=True)
class TransactionRecord:
    kind: Kind
    client_id: int
    tx_id: int
    amount: Optional[Decimal] = None

    def __post_init__(self):
        if self.amount is not None and self.amount < 0:
            raise ValueError(f"negative amount {self.amount} on tx {self.tx_id}")


class Account:
    def __init__(self, client_id):
        self.client_id = client_id
        self.available = Decimal(0)
        self.held = Decimal(0)
        self.total = Decimal(0)
        self.locked = False

    def __repr__(self):
        return (f"Account(client_id={self.client_id}, available={self.available}, held={self.held}, "
                f"total={self.total}, locked={self.locked})")

    def check_unlocked(self):
        if self.locked:
            raise AccountLocked(f"client {self.client_id} is locked")

    def check_available(self, amount):
        if self.available < amount or self.total < amount:
            raise InsufficientAvailableFunds("nsf")

    def check_held(self, amount):
        if self.held < amount:
            raise InsufficientHeldFunds("insufficient held funds")

    def deposit(self, amount):
        self.check_unlocked()
        self.available += amount
        self.total += amount

    def withdraw(self, amount):
        self.check_unlocked()
        self.check_available(amount)
        self.available -= amount
        self.total -= amount

    def dispute(self, amount):
        self.check_unlocked()
        self.check_available(amount)
        self.available -= amount
        self.held += amount

    def resolve(self, amount):
        self.check_unlocked()
        self.check_held(amount)
        self.held -= amount
        self.available += amount

    def chargeback(self, amount):
        self.check_unlocked()
        self.check_held(amount)
        self.held -= amount
        self.total -= amount
        self.locked = True


class DisputeStatus(Enum):
    UNDISPUTED = "undisputed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    CHARGED_BACK = "charged back"


class RecordCache:
    """Keeps every accepted record in memory. No re-read I/O."""

    def remember(self, record):
        return record

    def recall(self, ref):
        return ref


class SourceLocator:
    """
    Keeps only the offset of each accepted row and re-reads it from the input
    file when a dispute needs it. Relies on the reader's current_offset still
    pointing at the record being registered.
    """

    def __init__(self, reader):
        self.reader = reader

    def remember(self, record):
        if self.reader.current_offset is None:
            raise LookupFailure("no source offset known for tx", tx_id=record.tx_id, client_id=record.client_id)
        return self.reader.current_offset

    def recall(self, offset):
        try:
            return self.reader.read_at(offset)
        except (OSError, ValueError, InvalidOperation, IndexError, csv.Error) as e:
            raise LookupFailure(f"can't re-read record at offset {offset}: {e}") from e


class TransactionIndex:
    TRANSITIONS = {
        DisputeStatus.UNDISPUTED: {DisputeStatus.DISPUTED},
        DisputeStatus.DISPUTED: {DisputeStatus.RESOLVED, DisputeStatus.CHARGED_BACK},
        DisputeStatus.RESOLVED: {DisputeStatus.DISPUTED},
        DisputeStatus.CHARGED_BACK: set(),
    }

    def __init__(self, store=None):
        self.store = store if store is not None else RecordCache()
        # tx_id -> [status, whatever the store handed back from remember()]
        self.entries = {}

    def __contains__(self, tx_id):
        return tx_id in self.entries

    def __len__(self):
        return len(self.entries)

    def add(self, record):
        if record.kind not in ACCEPTED_KINDS:
            raise ValueError(f"{record.kind.value} records can't be indexed")
        if record.tx_id in self.entries:
            raise DuplicateTransactionId(f"{record.kind.value} duplicates existing tx_id").add_context(record)
        self.entries[record.tx_id] = [DisputeStatus.UNDISPUTED, self.store.remember(record)]

    def get(self, tx_id):
        entry = self.entries.get(tx_id)
        if entry is None:
            return None
        record = self.store.recall(entry[1])
        if record.tx_id != tx_id or record.kind not in ACCEPTED_KINDS:
            raise LookupFailure(f"index entry resolved to {record.kind.value} tx {record.tx_id}", tx_id=tx_id)
        return record

    def status(self, tx_id):
        return self.entries[tx_id][0]

    def set_status(self, tx_id, status):
        current = self.entries[tx_id][0]
        if status not in self.TRANSITIONS[current]:
            raise ValueError(f"tx {tx_id} can't go from {current.value} to {status.value}")
        self.entries[tx_id][0] = status


class LedgerEngine:
    def __init__(self, index=None, logger=None):
        self.accounts = {}
        self.index = index if index is not None else TransactionIndex()
        self.log = logger if logger is not None else log
        self.records_seen = 0
        self.records_rejected = 0

    def get_account(self, client_id):
        if client_id not in self.accounts:
            self.accounts[client_id] = Account(client_id)
        return self.accounts[client_id]

    def process(self, records):
        for record in records:
            self.process_record(record)
        self.log.info("processed %d records, %d rejected, %d accounts",
                      self.records_seen, self.records_rejected, len(self.accounts))
        return self.accounts

    def process_record(self, record):
        self.records_seen += 1
        account = self.get_account(record.client_id)
        try:
            self.dispatch(account, record)
        except TransactionRejected as e:
            self.records_rejected += 1
            self.log.warning("%s", e.add_context(record))
        except ProcessingAborted as e:
            e.add_context(record)
            raise

    def dispatch(self, account, record):
        kind = record.kind
        if kind is Kind.DEPOSIT:
            self.process_deposit(account, record)
        elif kind is Kind.WITHDRAWAL:
            self.process_withdrawal(account, record)
        elif kind is Kind.DISPUTE:
            self.process_dispute(account, record)
        elif kind is Kind.RESOLVE:
            self.process_resolve(account, record)
        elif kind is Kind.CHARGEBACK:
            self.process_chargeback(account, record)
        else:
            raise ValueError(f"unhandled transaction kind {kind!r}")

    def process_deposit(self, account, record):
        amount = self.require_new_tx(record)
        account.deposit(amount)
        self.index.add(record)

    def process_withdrawal(self, account, record):
        amount = self.require_new_tx(record)
        account.withdraw(amount)
        self.index.add(record)

    def process_dispute(self, account, record):
        account.check_unlocked()
        original = self.find_disputable_tx(record)
        # a charged back tx can't get here, its account is locked
        if self.index.status(original.tx_id) is DisputeStatus.DISPUTED:
            raise AlreadyDisputed("tx is already disputed")

        account.dispute(original.amount)
        self.index.set_status(original.tx_id, DisputeStatus.DISPUTED)
        self.log.debug("tx %s disputed, holding %s for client %s", original.tx_id, original.amount, account.client_id)

    def process_resolve(self, account, record):
        account.check_unlocked()
        original = self.find_open_dispute(record)
        account.resolve(original.amount)
        self.index.set_status(original.tx_id, DisputeStatus.RESOLVED)

    def process_chargeback(self, account, record):
        account.check_unlocked()
        original = self.find_open_dispute(record)
        account.chargeback(original.amount)
        self.index.set_status(original.tx_id, DisputeStatus.CHARGED_BACK)
        self.log.info("client %s locked by chargeback of tx %s", account.client_id, original.tx_id)

    def require_new_tx(self, record):
        if record.amount is None:
            raise MissingAmount("missing amount")
        if record.tx_id in self.index:
            raise DuplicateTransactionId(f"{record.kind.value} duplicates existing tx_id")
        return record.amount

    def find_disputable_tx(self, record):
        original = self.index.get(record.tx_id)
        if original is None:
            raise TransactionNotFound("tx not found")
        if original.client_id != record.client_id:
            raise ClientMismatch("tx client_id mismatch")
        if original.kind is not Kind.DEPOSIT:
            raise NotADeposit("tx is not a deposit")
        return original

    def find_open_dispute(self, record):
        original = self.find_disputable_tx(record)
        if self.index.status(original.tx_id) is not DisputeStatus.DISPUTED:
            raise NotDisputed("tx is not disputed")
        return original


class TransactionReader:
    DEFAULT_FIELD_ORDER = ("type", "client", "tx", "amount")

    def __init__(self, filename):
        self.filename = filename
        self.field_idx = {name: idx for idx, name in enumerate(self.DEFAULT_FIELD_ORDER)}
        self.current_offset = None
        self._lookup_file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        if self._lookup_file is not None:
            self._lookup_file.close()
            self._lookup_file = None

    def __iter__(self):
        if not self.filename:
            raise RuntimeError("no filename to read has been set. aborting.")
        # binary mode so tell() gives plain byte offsets that read_at() can seek back to.
        # one physical line is one row: a quoted field spanning lines is split and its
        # pieces dropped, since a record must be re-readable from a single offset.
        with open(self.filename, "rb") as file:
            first_row = True
            while True:
                offset = file.tell()
                line = file.readline()
                if not line:
                    break
                if first_row:
                    first_row = False
                    if self.looks_like_header(line):
                        continue
                record = self.attempt_decode(line)
                if record is None:
                    continue
                self.current_offset = offset
                yield record

    def read_at(self, offset):
        if self._lookup_file is None:
            self._lookup_file = open(self.filename, "rb")
        self._lookup_file.seek(offset)
        return self.decode(self.split_row(self._lookup_file.readline()))

    def split_row(self, line):
        return next(csv.reader([line.decode("utf-8-sig")]), [])

    def looks_like_header(self, line):
        try:
            row = self.split_row(line)
        except (ValueError, csv.Error):
            return False
        return self.discover_field_order(row)

    def discover_field_order(self, row):
        names = [field.strip().lower() for field in row]
        if not {"type", "client", "tx"}.issubset(names):
            return False
        self.field_idx = {name: names.index(name) for name in self.DEFAULT_FIELD_ORDER if name in names}
        return True

    def get_field(self, row, name):
        idx = self.field_idx.get(name)
        if idx is None or idx >= len(row):
            return ""
        return row[idx].strip()

    def attempt_decode(self, line):
        # UnicodeDecodeError is a ValueError too
        try:
            return self.decode(self.split_row(line))
        except (ValueError, InvalidOperation, csv.Error) as e:
            log.debug("dropping row %r: %s", line, e)
            return None

    def decode(self, row):
        kind = Kind(self.get_field(row, "type"))
        client_id = self.parse_id(self.get_field(row, "client"), MAX_CLIENT_ID, "client")
        tx_id = self.parse_id(self.get_field(row, "tx"), MAX_TX_ID, "tx")
        amount = self.parse_amount(kind, self.get_field(row, "amount"))
        return TransactionRecord(kind, client_id, tx_id, amount)

    def parse_id(self, value, upper_bound, name):
        parsed = int(value)
        if not (0 <= parsed <= upper_bound):
            raise ValueError(f"{name} id {parsed} out of range")
        return parsed

    def parse_amount(self, kind, value):
        # disputes and friends point at an amount, they never carry one
        if kind not in ACCEPTED_KINDS or not value:
            return None
        amount = Decimal(value)
        if not amount.is_finite() or amount < 0:
            raise ValueError(f"invalid amount {value!r}")
        if amount > MAX_AMOUNT:
            raise ValueError(f"amount {value!r} above {MAX_AMOUNT}")
        return amount


def format_amount(value):
    with localcontext() as ctx:
        # every integer digit plus the four reported decimals
        ctx.prec = max(ctx.prec, value.adjusted() + 5)
        truncated = value.quantize(REPORT_PRECISION, rounding=ROUND_DOWN).normalize()
    return f"{truncated:f}"


def write_accounts(accounts, stream=None):
    # format everything first so a failure never leaves a half written table
    rows = [
        [
            client_id,
            format_amount(account.available),
            format_amount(account.held),
            format_amount(account.total),
            str(account.locked).lower(),
        ]
        for client_id, account in accounts.items()
    ]
    csvwriter = csv.writer(stream if stream is not None else sys.stdout, lineterminator="\n")
    csvwriter.writerow(["client", "available", "held", "total", "locked"])
    csvwriter.writerows(rows)


def process_file(filename, lookup="cache"):
    with TransactionReader(filename) as reader:
        store = SourceLocator(reader) if lookup == "seek" else RecordCache()
        engine = LedgerEngine(TransactionIndex(store))
        return engine.process(reader)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="payment-engine",
        description="Replay a CSV of client transactions and print the resulting account balances.",
    )
    parser.add_argument("input", help="path to the transactions CSV")
    parser.add_argument(
        "--lookup",
        choices=("cache", "seek"),
        default="cache",
        help="keep disputable records in memory (cache) or re-read them from the input file (seek)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get(LOG_LEVEL_ENV_VAR, "WARNING"),
        help=f"diagnostic log level on stderr, defaults to ${LOG_LEVEL_ENV_VAR} or WARNING",
    )
    args = parser.parse_args(argv)

    level = logging.getLevelName(args.log_level.upper())
    if not isinstance(level, int):
        parser.error(f"unknown log level {args.log_level!r}")
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s", force=True)

    log.info("processing %s with %s lookup", args.input, args.lookup)
    try:
        accounts = process_file(args.input, lookup=args.lookup)
    except ProcessingAborted as e:
        print(f"error: processing {args.input} failed: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: can't read {args.input}: {e}", file=sys.stderr)
        return 1

    write_accounts(accounts)
    return 0


if __name__ == '__main__':
    sys.exit(main())
