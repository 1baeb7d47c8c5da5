import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from rxquote.models.catalog import StockItem
from rxquote.models.prescription import (
    AIAnalysisResult,
    PrescriptionRecord,
    PrescriptionStatus,
    SuggestedItem,
)
from rxquote.services import prescription_service
from rxquote.services.catalog_dedup import ImportRow
from rxquote.services.inventory_service import _stock_items_statement
from rxquote.services.prescription_service import (
    ERROR_DUPLICATE_SUBMISSION,
    ERROR_INVALID_TARGET,
    ERROR_NOT_FOUND,
    ERROR_PERSISTENCE_FAILED,
    ERROR_VALIDATION_FAILED,
    PersistenceFailedError,
    _build_guarded_update,
    _overdue_statement,
    commit_import_rows,
    create_prescription_request,
    expire_overdue_requests,
    reject_request,
    submit_quote_for_request,
)
from rxquote.services.prescription_workflow import create_request, submit_quote
from rxquote.services.quote_builder import ViolationKind, add_from_stock, add_manual_line, build_quote

PHARMACY = "FARM-01"


def _session(rowcount: int = 1) -> MagicMock:
    session = MagicMock()
    session.execute = AsyncMock(return_value=MagicMock(rowcount=rowcount))
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.exec = AsyncMock()
    return session


def _request(confidence: float = 0.9, **kwargs):
    analysis = AIAnalysisResult(confidence=confidence, suggested_items=[SuggestedItem(raw_name="Coartem 6")])
    return create_request("CLI-1", "rx.jpg", [PHARMACY], ai_analysis=analysis, **kwargs)


class GuardedUpdateStatementTests(unittest.TestCase):
    def test_update_is_guarded_by_expected_status(self):
        before = _request()
        after = submit_quote(before, build_quote(PHARMACY, "Central", [add_manual_line("Coartem", 1, "10")])).request

        statement = _build_guarded_update(after, before.status)
        compiled = statement.compile(dialect=postgresql.dialect())
        sql = str(compiled)

        self.assertTrue(sql.startswith("UPDATE prescriptions SET"))
        self.assertIn("WHERE prescriptions.id = ", sql)
        self.assertIn("AND prescriptions.status = ", sql)
        self.assertNotIn("created_at", sql)
        self.assertEqual(compiled.params["status"], "QUOTED")
        self.assertIn("WAITING_FOR_QUOTES", compiled.params.values())

    def test_overdue_statement_skips_terminal_requests(self):
        sql = str(_overdue_statement(datetime(2026, 10, 18)).compile(dialect=postgresql.dialect()))
        self.assertIn("prescriptions.status NOT IN", sql)
        self.assertIn("prescriptions.expires_at IS NOT NULL", sql)
        self.assertIn("prescriptions.expires_at <= ", sql)

    def test_live_stock_reread_is_scoped_to_pharmacy(self):
        statement = _stock_items_statement([uuid4()], PHARMACY)
        compiled = statement.compile(dialect=postgresql.dialect())

        self.assertIn("stock_items.id IN", str(compiled))
        self.assertIn("AND stock_items.pharmacy_id = ", str(compiled))
        self.assertIn(PHARMACY, compiled.params.values())


class CreatePrescriptionRequestTests(unittest.IsolatedAsyncioTestCase):
    async def test_stores_new_request(self):
        session = _session()
        session.exec.return_value = MagicMock(all=MagicMock(return_value=[]))

        outcome = await create_prescription_request(session, "CLI-1", "rx.jpg", [PHARMACY])

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.request.status, PrescriptionStatus.WAITING_FOR_QUOTES)
        stored = session.add.call_args.args[0]
        self.assertIsInstance(stored, PrescriptionRecord)
        self.assertEqual(stored.id, outcome.request.id)
        session.commit.assert_awaited_once()

    async def test_same_image_inside_window_is_refused(self):
        now = datetime(2026, 10, 18, 12, 0)
        existing = PrescriptionRecord.from_domain(_request(now=now - timedelta(hours=1)))
        session = _session()
        session.exec.return_value = MagicMock(all=MagicMock(return_value=[existing]))

        outcome = await create_prescription_request(session, "CLI-1", "rx.jpg", [PHARMACY], now=now)

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, ERROR_DUPLICATE_SUBMISSION)
        self.assertEqual(outcome.request.id, existing.id)
        session.add.assert_not_called()

    async def test_same_image_outside_window_is_stored(self):
        now = datetime(2026, 10, 18, 12, 0)
        old = PrescriptionRecord.from_domain(_request(now=now - timedelta(days=3)))
        session = _session()
        session.exec.return_value = MagicMock(all=MagicMock(return_value=[old]))

        outcome = await create_prescription_request(session, "CLI-1", "rx.jpg", [PHARMACY], now=now)

        self.assertTrue(outcome.ok)
        self.assertNotEqual(outcome.request.id, old.id)
        session.add.assert_called_once()

    async def test_aware_deadline_is_stored_naive(self):
        session = _session()
        session.exec.return_value = MagicMock(all=MagicMock(return_value=[]))
        deadline = datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc)

        outcome = await create_prescription_request(
            session, "CLI-1", "rx.jpg", [PHARMACY], expires_at=deadline, now=datetime(2026, 10, 18, tzinfo=timezone.utc),
        )

        stored = session.add.call_args.args[0]
        self.assertEqual(stored.expires_at, datetime(2026, 10, 20, 12, 0))
        self.assertIsNone(stored.expires_at.tzinfo)
        self.assertIsNone(outcome.request.created_at.tzinfo)

    async def test_several_targets_are_refused(self):
        outcome = await create_prescription_request(_session(), "CLI-1", "rx.jpg", ["FARM-01", "FARM-02"])
        self.assertEqual(outcome.error, ERROR_INVALID_TARGET)

    async def test_database_error_is_reported(self):
        session = _session()
        session.exec.side_effect = OperationalError("SELECT", {}, Exception("down"))

        outcome = await create_prescription_request(session, "CLI-1", "rx.jpg", [PHARMACY])

        self.assertEqual(outcome.error, ERROR_PERSISTENCE_FAILED)
        session.rollback.assert_awaited_once()


class SubmitQuoteForRequestTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.stock_item = StockItem(
            id=uuid4(), pharmacy_id=PHARMACY, name="Coartem 6", unit_price=Decimal("1500"), quantity_on_hand=10,
        )
        self.lines = [add_from_stock(self.stock_item, 2)]

    async def _submit(self, session, request, live_stock):
        with patch.object(prescription_service, "get_request", AsyncMock(return_value=request)), \
                patch.object(prescription_service, "fetch_stock_items", AsyncMock(return_value=live_stock)):
            return await submit_quote_for_request(session, request.id, PHARMACY, "Central", self.lines)

    async def test_quote_recorded(self):
        session = _session(rowcount=1)
        outcome = await self._submit(session, _request(), [self.stock_item])

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.request.status, PrescriptionStatus.QUOTED)
        self.assertEqual(outcome.request.quote.total_value, Decimal("3000"))
        session.execute.assert_awaited_once()
        session.commit.assert_awaited_once()

    async def test_live_stock_is_rechecked(self):
        drained = StockItem(
            id=self.stock_item.id, pharmacy_id=PHARMACY, name="Coartem 6", unit_price=Decimal("1500"), quantity_on_hand=1,
        )
        session = _session()

        outcome = await self._submit(session, _request(), [drained])

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, ERROR_VALIDATION_FAILED)
        self.assertEqual(len(outcome.violations), 1)
        self.assertEqual(outcome.violations[0].available, 1)
        session.execute.assert_not_awaited()

    async def test_stock_of_another_pharmacy_is_not_available(self):
        foreign = StockItem(
            id=uuid4(), pharmacy_id="FARM-99", name="Coartem 6", unit_price=Decimal("1500"), quantity_on_hand=10,
        )
        self.lines = [add_from_stock(foreign, 2)]
        session = _session()

        with patch.object(prescription_service, "get_request", AsyncMock(return_value=_request())), \
                patch.object(prescription_service, "fetch_stock_items", AsyncMock(return_value=[foreign])) as fetch:
            outcome = await submit_quote_for_request(session, uuid4(), PHARMACY, "Central", self.lines)

        fetch.assert_awaited_once_with(session, [foreign.id], PHARMACY)
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, ERROR_VALIDATION_FAILED)
        self.assertEqual(outcome.violations[0].kind, ViolationKind.INSUFFICIENT_STOCK)
        self.assertEqual(outcome.violations[0].available, 0)
        self.assertEqual(outcome.request.status, PrescriptionStatus.WAITING_FOR_QUOTES)
        session.execute.assert_not_awaited()

    async def test_request_under_review_is_validated_and_quoted(self):
        outcome = await self._submit(_session(), _request(confidence=0.1), [self.stock_item])
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.request.validated_by, PHARMACY)
        self.assertEqual(outcome.request.status, PrescriptionStatus.QUOTED)

    async def test_lost_race_is_an_invalid_transition(self):
        request = _request()
        winner = submit_quote(request, build_quote(PHARMACY, "Central", [add_manual_line("X", 1, "5")])).request
        session = _session(rowcount=0)

        with patch.object(prescription_service, "get_request", AsyncMock(side_effect=[request, winner])), \
                patch.object(prescription_service, "fetch_stock_items", AsyncMock(return_value=[self.stock_item])):
            outcome = await submit_quote_for_request(session, request.id, PHARMACY, "Central", self.lines)

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, "INVALID_TRANSITION")
        self.assertEqual(outcome.request.quote, winner.quote)

    async def test_commit_failure_is_reported(self):
        session = _session()
        session.commit.side_effect = OperationalError("UPDATE", {}, Exception("down"))

        outcome = await self._submit(session, _request(), [self.stock_item])

        self.assertEqual(outcome.error, ERROR_PERSISTENCE_FAILED)
        session.rollback.assert_awaited_once()

    async def test_unknown_request(self):
        with patch.object(prescription_service, "get_request", AsyncMock(return_value=None)):
            outcome = await submit_quote_for_request(_session(), uuid4(), PHARMACY, "Central", self.lines)
        self.assertEqual(outcome.error, ERROR_NOT_FOUND)


class OtherOperationsTests(unittest.IsolatedAsyncioTestCase):
    async def test_reject_from_expired_is_refused_without_writing(self):
        expired = prescription_service.transition(_request(), prescription_service.Expire()).request
        session = _session()
        with patch.object(prescription_service, "get_request", AsyncMock(return_value=expired)):
            outcome = await reject_request(session, expired.id, "ilegível", PHARMACY)

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, "INVALID_TRANSITION")
        session.execute.assert_not_awaited()

    async def test_expire_overdue_requests(self):
        now = datetime(2026, 10, 18, 12, 0)
        overdue = PrescriptionRecord.from_domain(_request(expires_at=now - timedelta(hours=1)))
        session = _session(rowcount=1)
        session.exec.return_value = MagicMock(all=MagicMock(return_value=[overdue]))

        self.assertEqual(await expire_overdue_requests(session, now), 1)
        session.execute.assert_awaited_once()

    async def test_commit_import_rows_targets_stock_or_catalog(self):
        session = _session()
        rows = [ImportRow(name="COARTEM 6", price=Decimal("900"), quantity=4)]

        self.assertEqual(await commit_import_rows(session, rows, PHARMACY), 1)
        stock = session.add.call_args.args[0]
        self.assertEqual((stock.pharmacy_id, stock.name, stock.quantity_on_hand), (PHARMACY, "COARTEM 6", 4))

        await commit_import_rows(session, rows)
        entry = session.add.call_args.args[0]
        self.assertEqual(entry.canonical_name, "COARTEM 6")
        self.assertEqual(entry.reference_price, Decimal("900"))

    async def test_imported_stock_without_quantity_gets_default(self):
        session = _session()
        rows = [ImportRow(name="DIPIRONA 500MG", price=Decimal("300"))]

        await commit_import_rows(session, rows, PHARMACY, default_quantity=50)
        self.assertEqual(session.add.call_args.args[0].quantity_on_hand, 50)

        await commit_import_rows(session, rows, PHARMACY)
        self.assertEqual(session.add.call_args.args[0].quantity_on_hand, prescription_service.IMPORT_DEFAULT_QUANTITY)

    async def test_import_commit_failure_is_reported(self):
        session = _session()
        session.commit.side_effect = OperationalError("INSERT", {}, Exception("down"))

        with self.assertRaises(PersistenceFailedError) as ctx:
            await commit_import_rows(session, [ImportRow(name="COARTEM 6", price=Decimal("900"))], PHARMACY)

        self.assertEqual(ctx.exception.error, ERROR_PERSISTENCE_FAILED)
        session.rollback.assert_awaited_once()

    async def test_overdue_lookup_failure_is_reported(self):
        session = _session()
        session.exec.side_effect = OperationalError("SELECT", {}, Exception("down"))

        with self.assertRaises(PersistenceFailedError):
            await expire_overdue_requests(session, datetime(2026, 10, 18, 12, 0))
        session.rollback.assert_awaited_once()
        session.execute.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
