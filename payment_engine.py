import csv
import math
import os
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

# 1 major currency unit == 10,000 minor units. all balances are kept as ints of minor units.
SCALE = 10_000

MAX_CLIENT_ID = 65535
MAX_TX_ID = 4294967295

OUTPUT_FIELDNAMES = ['client', 'available', 'held', 'total', 'locked']
REQUIRED_FIELDS = ('type', 'client', 'tx')
DEFAULT_FIELD_ORDER = {'type': 0, 'client': 1, 'tx': 2, 'amount': 3}


class TransactionFormatError(ValueError):
    """Input row that cannot be parsed. Aborts the whole run."""

    def __init__(self, message, line_num=None):
        if line_num is not None:
            message = f"line {line_num}: {message}"
        super().__init__(message)
        self.line_num = line_num


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    CHARGEBACK = "chargeback"


class DisputeState(Enum):
    NOT_INITIATED = "not_initiated"
    INITIATED = "initiated"
    CHARGED_BACK = "charged_back"


@dataclass
class Deposit:
    amount: int
    dispute_state: DisputeState = DisputeState.NOT_INITIATED


@dataclass
class Account:
    available: int = 0
    held: int = 0
    locked: bool = False
    # kept for the whole run so a dispute can reference any earlier deposit
    deposits: dict = field(default_factory=dict)

    @property
    def total(self):
        return self.available + self.held


@dataclass(frozen=True)
class Transaction:
    type: TransactionType
    client: int
    tx: int
    amount: Optional[int] = None


def to_minor(amount):
    """Convert a major unit amount to minor units.

    The amount is read as a float and the scaled value truncated toward zero, so the
    binary error of the float can cost one minor unit: "0.0003" comes out as 2.
    This is the only place a float is allowed to exist.
    """
    text = amount.strip() if isinstance(amount, str) else amount
    if isinstance(text, str) and "_" in text:
        raise ValueError(f"invalid amount: {amount!r}")
    try:
        value = float(text)
    except (TypeError, ValueError):
        raise ValueError(f"invalid amount: {amount!r}") from None
    if not math.isfinite(value):
        raise ValueError(f"invalid amount: {amount!r}")
    return int(value * SCALE)


def to_major(amount):
    """Format minor units as a major unit string with exactly 4 decimal digits."""
    return f"{Decimal(amount).scaleb(-4):.4f}"


def get_account(accounts, client_id):
    if client_id not in accounts:
        accounts[client_id] = Account()
    return accounts[client_id]


def apply_transaction(accounts, transaction):
    """Apply a single event to the accounts mapping.

    The account for the event's client is created on first reference, even when the
    event itself turns out to be a no-op.

    Returns None when the event was applied, otherwise a short reason why it was ignored.
    Ignored events never change any balance.
    """
    account = get_account(accounts, transaction.client)
    tx_type = transaction.type

    if tx_type is TransactionType.DEPOSIT:
        return apply_deposit(account, transaction)
    elif tx_type is TransactionType.WITHDRAWAL:
        return apply_withdrawal(account, transaction)
    elif tx_type is TransactionType.DISPUTE:
        return apply_dispute(account, transaction)
    elif tx_type is TransactionType.RESOLVE:
        return apply_resolve(account, transaction)
    elif tx_type is TransactionType.CHARGEBACK:
        return apply_chargeback(account, transaction)
    return "invalid record_type"


def apply_deposit(account, transaction):
    if transaction.amount is None:
        return "amount missing"

    # a reused tx id replaces the stored deposit; the earlier credit stays on the balance.
    account.available += transaction.amount
    account.deposits[transaction.tx] = Deposit(transaction.amount)
    return None


def apply_withdrawal(account, transaction):
    if transaction.amount is None:
        return "amount missing"

    # locked accounts still take deposits and disputes, just no withdrawals.
    if account.locked:
        return "account locked"

    if account.available < transaction.amount:
        return "nsf"

    account.available -= transaction.amount
    return None


def apply_dispute(account, transaction):
    deposit = account.deposits.get(transaction.tx)
    if deposit is None:
        return "tx not found"

    if deposit.dispute_state is DisputeState.INITIATED:
        return "tx is already disputed"

    if deposit.dispute_state is DisputeState.CHARGED_BACK:
        return "tx is charged back"

    deposit.dispute_state = DisputeState.INITIATED
    account.available -= deposit.amount
    account.held += deposit.amount
    return None


def apply_resolve(account, transaction):
    deposit = account.deposits.get(transaction.tx)
    if deposit is None:
        return "tx not found"

    if deposit.dispute_state is DisputeState.CHARGED_BACK:
        return "tx is charged back"

    if deposit.dispute_state is not DisputeState.INITIATED:
        return "tx is not disputed"

    # back to not initiated, so the same deposit may be disputed again later.
    deposit.dispute_state = DisputeState.NOT_INITIATED
    account.held -= deposit.amount
    account.available += deposit.amount
    return None


def apply_chargeback(account, transaction):
    deposit = account.deposits.get(transaction.tx)
    if deposit is None:
        return "tx not found"

    if deposit.dispute_state is DisputeState.CHARGED_BACK:
        return "tx is already charged back"

    if deposit.dispute_state is not DisputeState.INITIATED:
        return "tx is not disputed"

    deposit.dispute_state = DisputeState.CHARGED_BACK
    account.held -= deposit.amount
    account.locked = True
    return None


def process_transactions(transactions, accounts=None, on_reject=None):
    """Fold an ordered stream of transactions into a client_id -> Account mapping.

    The stream is consumed one transaction at a time. The mapping passed in is mutated
    in place and returned; a fresh one is used when none is given. on_reject, when set,
    is called as on_reject(transaction, reason) for each ignored transaction.
    """
    if accounts is None:
        accounts = {}
    for transaction in transactions:
        reason = apply_transaction(accounts, transaction)
        if reason is not None and on_reject is not None:
            on_reject(transaction, reason)
    return accounts


def discover_field_order(header, line_num=1):
    field_idx = {}
    for idx, name in enumerate(header):
        name = name.strip().lower()
        if name not in field_idx:
            field_idx[name] = idx

    missing = [name for name in REQUIRED_FIELDS if name not in field_idx]
    if missing:
        raise TransactionFormatError(f"header is missing field(s): {', '.join(missing)}", line_num)

    return {name: field_idx.get(name) for name in DEFAULT_FIELD_ORDER}


def parse_id(value, name, max_value, line_num=None):
    value = value.strip()
    digits = value[1:] if value.startswith("+") else value
    # int() alone would also take things like "1_000", a minus sign or non-ascii digits
    if not (digits.isascii() and digits.isdigit()):
        raise TransactionFormatError(f"invalid {name}: {value!r}", line_num)
    parsed = int(digits)
    if parsed > max_value:
        raise TransactionFormatError(f"{name} out of range: {value!r}", line_num)
    return parsed


def parse_record(record, field_idx=None, line_num=None):
    if field_idx is None:
        field_idx = DEFAULT_FIELD_ORDER

    def get_field(name):
        idx = field_idx.get(name)
        if idx is None or idx >= len(record):
            return ""
        return record[idx].strip()

    if len(record) <= max(field_idx[name] for name in REQUIRED_FIELDS):
        raise TransactionFormatError(f"too few fields in row like: {record!r}", line_num)

    type_name = get_field('type').lower()
    try:
        tx_type = TransactionType(type_name)
    except ValueError:
        raise TransactionFormatError(f"invalid record_type: {type_name!r}", line_num) from None

    client_id = parse_id(get_field('client'), "client_id", MAX_CLIENT_ID, line_num)
    tx_id = parse_id(get_field('tx'), "tx_id", MAX_TX_ID, line_num)

    amount = get_field('amount')
    if not amount:
        amount = None
    else:
        try:
            amount = to_minor(amount)
        except ValueError as e:
            raise TransactionFormatError(str(e), line_num) from None

    return Transaction(tx_type, client_id, tx_id, amount)


def read_transactions(stream):
    """Lazily parse transactions from a CSV text stream whose first row is the header."""
    csvreader = csv.reader(stream)
    field_idx = None
    width = None
    for record in csvreader:
        if not record:
            continue

        if field_idx is None:
            field_idx = discover_field_order(record, csvreader.line_num)
            width = len(record)
            continue

        if len(record) != width:
            raise TransactionFormatError(
                f"expected {width} fields, found {len(record)} in row like: {record!r}",
                csvreader.line_num,
            )

        yield parse_record(record, field_idx, csvreader.line_num)


def write_accounts(accounts, stream):
    csvwriter = csv.writer(stream, lineterminator="\n")
    csvwriter.writerow(OUTPUT_FIELDNAMES)
    for client_id, account in accounts.items():
        csvwriter.writerow([
            client_id,
            to_major(account.available),
            to_major(account.held),
            to_major(account.total),
            str(account.locked).lower(),
        ])


class PaymentEngine:

    def __init__(self, filename, verbose=False):
        self.filename = filename
        self.verbose = verbose
        self.account_totals = {}

    def read_transaction_data(self):
        if not self.filename:
            raise RuntimeError("no filename to read has been set. aborting.")
        on_reject = self.reject_log if self.verbose else None
        with open(self.filename, encoding="utf-8", newline="") as file:
            process_transactions(read_transactions(file), self.account_totals, on_reject)
        return self.account_totals

    def process_record(self, record):
        # handy for feeding single rows in the default type,client,tx,amount order
        transaction = parse_record(record)
        reason = apply_transaction(self.account_totals, transaction)
        if reason is not None and self.verbose:
            self.reject_log(transaction, reason)
        return reason

    def reject_log(self, transaction, reason):
        self.error_log(reason, transaction.tx, transaction.client, transaction.type.value, transaction.amount)

    def error_log(self, message, tx_id=None, client_id=None, record_type=None, amount=None):
        if tx_id is not None and client_id is not None and record_type is not None:
            formatted_prefix = f"tx_id {tx_id}, client_id {client_id}, failed to apply {record_type}"
            amount_detail = ""
            if amount is not None:
                amount_detail = f" of ${to_major(amount)}"
            print(f"{formatted_prefix}{amount_detail}: {message}", file=sys.stderr)
        else:
            print(f"transaction error: {message}", file=sys.stderr)

    def get_account_totals(self):
        return self.read_transaction_data()

    def generate_output(self, stream=None):
        self.read_transaction_data()
        write_accounts(self.account_totals, stream if stream is not None else sys.stdout)


def verbose_from_env(environ=None):
    value = (os.environ if environ is None else environ).get("PAYMENT_ENGINE_VERBOSE", "")
    return value.strip() not in ("", "0")


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        sys.exit("file path required as the first and only parameter")

    try:
        PaymentEngine(args[0], verbose=verbose_from_env()).generate_output()
    except (OSError, RuntimeError, UnicodeDecodeError, csv.Error, TransactionFormatError) as e:
        sys.exit(f"error: {e}")


if __name__ == '__main__':
    main()
