import pytest
from datetime import date
from decimal import Decimal
from typing import List

from spice.classification.batch import BatchOptions
from spice.common.context import CancelContext
from spice.domain.enums import Direction
from spice.domain.models import Transaction
from spice.services.transaction_service import TransactionService


@pytest.fixture
def mock_storage(mocker):
    """Storage double with no real behaviour"""
    return mocker.Mock()


@pytest.fixture
def mock_checkpoints(mocker):
    return mocker.Mock()


@pytest.fixture
def mock_engine(mocker):
    return mocker.Mock()


@pytest.fixture
def service(mock_storage, mock_checkpoints, mock_engine) -> TransactionService:
    return TransactionService(mock_storage, mock_checkpoints, mock_engine)


@pytest.fixture
def sample_transactions() -> List[Transaction]:
    return [
        Transaction("t1", date(2025, 1, 15), "Coffee Shop", Decimal("4.50"), "amex",
                    direction=Direction.EXPENSE),
        Transaction("t2", date(2025, 1, 16), "Salary", Decimal("5000.00"), "amex",
                    direction=Direction.INCOME),
    ]


@pytest.fixture
def mock_parser(mocker, sample_transactions):
    parser = mocker.Mock()
    parser.parse.return_value = sample_transactions
    mocker.patch(
        "spice.parsers.factory.ParserFactory.create_parser",
        return_value=parser,
    )
    return parser


@pytest.mark.unit
class TestTransactionServiceQuery:

    def test_get_transactions_calls_repository(self, service, mock_storage, sample_transactions):
        # Arrange
        mock_storage.transactions.get_all.return_value = sample_transactions

        # Act
        result = service.get_transactions(start_date=date(2025, 1, 1), category="Dining")

        # Assert
        mock_storage.transactions.get_all.assert_called_once_with(
            start_date=date(2025, 1, 1),
            end_date=None,
            category="Dining",
        )
        assert result == sample_transactions


@pytest.mark.unit
class TestTransactionServiceImport:

    def test_import_takes_checkpoint_before_saving(
        self, service, mock_storage, mock_checkpoints, mock_parser, sample_transactions, mocker
    ):
        # Arrange
        calls = mocker.Mock()
        calls.attach_mock(mock_checkpoints.auto_checkpoint, "checkpoint")
        calls.attach_mock(mock_storage.transactions.save_many, "save_many")
        mock_storage.transactions.save_many.return_value = sample_transactions

        # Act
        result = service.import_statement("statement.csv", "csv")

        # Assert
        assert [c[0] for c in calls.mock_calls] == ["checkpoint", "save_many"]
        mock_checkpoints.auto_checkpoint.assert_called_once_with("import")
        assert result.new_transactions == 2
        assert result.duplicates_skipped == 0
        assert result.checkpoint is mock_checkpoints.auto_checkpoint.return_value

    def test_import_reports_duplicates(
        self, service, mock_storage, mock_parser, sample_transactions
    ):
        mock_storage.transactions.save_many.return_value = sample_transactions[:1]

        result = service.import_statement("statement.csv", "csv")

        assert result.new_transactions == 1
        assert result.skipped == sample_transactions[1:]

    def test_import_dry_run_doesnt_save(
        self, service, mock_storage, mock_checkpoints, mock_parser, sample_transactions
    ):
        # Arrange
        mock_storage.transactions.exists.side_effect = [False, True]

        # Act
        result = service.import_statement("statement.csv", "csv", dry_run=True)

        # Assert
        mock_storage.transactions.save_many.assert_not_called()
        mock_checkpoints.auto_checkpoint.assert_not_called()
        assert result.dry_run
        assert result.imported == sample_transactions[:1]
        assert result.duplicates_skipped == 1

    def test_empty_statement_skips_checkpoint(
        self, service, mock_storage, mock_checkpoints, mock_parser
    ):
        mock_parser.parse.return_value = []
        mock_storage.transactions.save_many.return_value = []

        result = service.import_statement("statement.csv", "csv")

        mock_checkpoints.auto_checkpoint.assert_not_called()
        assert not result.success


@pytest.mark.unit
class TestTransactionServiceRecategorize:

    def test_recategorize_checkpoints_then_classifies(
        self, service, mock_storage, mock_checkpoints, mock_engine, sample_transactions
    ):
        # Arrange
        mock_storage.transactions.get_all.return_value = sample_transactions
        ctx = CancelContext()
        options = BatchOptions(workers=2)

        # Act
        result = service.recategorize(ctx, start_date=date(2025, 1, 1), options=options)

        # Assert
        mock_checkpoints.auto_checkpoint.assert_called_once_with("recategorize")
        mock_engine.classify_specific_transactions.assert_called_once_with(
            ctx, sample_transactions, options
        )
        assert result.selected == 2
        assert result.summary is mock_engine.classify_specific_transactions.return_value

    def test_empty_selection_does_nothing(
        self, service, mock_storage, mock_checkpoints, mock_engine
    ):
        mock_storage.transactions.get_all.return_value = []

        result = service.recategorize(CancelContext(), category="Dining")

        assert result.nothing_to_do
        mock_checkpoints.auto_checkpoint.assert_not_called()
        mock_engine.classify_specific_transactions.assert_not_called()

    def test_requires_engine(self, mock_storage, mock_checkpoints):
        service = TransactionService(mock_storage, mock_checkpoints)

        with pytest.raises(RuntimeError, match="engine"):
            service.recategorize(CancelContext())
