from __future__ import annotations

from datetime import date

import pytest

from budgetbook import models
from budgetbook.errors import RemoteError
from budgetbook.services import LedgerService
from budgetbook.sync import replica
from budgetbook.sync.engine import SyncEngine, SyncReport
from budgetbook.sync.mappers import parse_iso

from fakes import FakeIdentityProvider, FakeRemoteBackend


@pytest.fixture()
def remote():
    return FakeRemoteBackend()


@pytest.fixture()
def identity():
    return FakeIdentityProvider("user-1")


@pytest.fixture()
def engine_under_test(session_factory, remote, identity):
    return SyncEngine(session_factory, remote, identity)


def _seed(db):
    ledger = LedgerService(db)
    ledger.upsert_month("2025-01", 1_000_000, 200_000)
    budget = ledger.create_budget("2025-01", "Groceries", 500_000)
    txn = ledger.create_transaction(budget.id, 12_000, date(2025, 1, 4), "market")
    bond = ledger.create_bond(1_000_000, 3.2, date(2024, 1, 1), 1)
    return budget, txn, bond


@pytest.mark.asyncio
async def test_push_cleans_rows_and_adopts_server_timestamp(db_session, engine_under_test, remote):
    budget, txn, bond = _seed(db_session)

    report = await engine_under_test.sync()

    assert report.ok
    assert report.pushed == {"months": 1, "budgets": 1, "transactions": 1, "bonds": 1}
    assert remote.rows["budgets"][budget.id]["user_id"] == "user-1"
    db_session.expire_all()
    for model in (models.Month, models.Budget, models.Transaction, models.Bond):
        assert all(not row.dirty for row in db_session.query(model))
    local = db_session.get(models.Transaction, txn.id)
    assert local.updated_at == parse_iso(remote.rows["transactions"][txn.id]["updated_at"])
    assert report.watermark_advanced


@pytest.mark.asyncio
async def test_second_sync_is_a_no_op(db_session, engine_under_test, remote):
    _seed(db_session)
    await engine_under_test.sync()
    before = {t: dict(rows) for t, rows in remote.rows.items()}
    remote.calls.clear()

    report = await engine_under_test.sync()

    assert report.ok
    assert not [c for c in remote.calls if c[0] == "upsert"]
    assert sum(report.pulled.values()) == 0
    assert remote.rows == before


@pytest.mark.asyncio
async def test_pull_never_overwrites_dirty_rows(db_session, engine_under_test, remote):
    budget, _, _ = _seed(db_session)
    await engine_under_test.sync()

    LedgerService(db_session).update_budget(budget.id, planned_amount=111)
    remote.server_write(
        "budgets",
        {**remote.rows["budgets"][budget.id], "planned_amount": 999},
    )

    report = SyncReport()
    assert await engine_under_test.pull_changes(report)

    db_session.expire_all()
    local = db_session.get(models.Budget, budget.id)
    assert local.planned_amount == 111
    assert local.dirty

    # 다음 사이클에서 로컬 변경이 원격을 덮어씀
    await engine_under_test.sync()
    assert remote.rows["budgets"][budget.id]["planned_amount"] == 111


@pytest.mark.asyncio
async def test_pull_applies_remote_changes_to_clean_rows(db_session, engine_under_test, remote):
    budget, _, _ = _seed(db_session)
    await engine_under_test.sync()
    remote.server_write("budgets", {**remote.rows["budgets"][budget.id], "category": "Food"})
    remote.server_write(
        "months",
        {"id": "2025-02", "expected_income": 5, "savings_goal": 0, "user_id": "user-1"},
    )

    report = await engine_under_test.sync()

    assert report.pulled["budgets"] == 1
    assert report.pulled["months"] == 1
    db_session.expire_all()
    assert db_session.get(models.Budget, budget.id).category == "Food"
    month = db_session.get(models.Month, "2025-02")
    assert month is not None and month.dirty is False


@pytest.mark.asyncio
async def test_tombstones_are_pushed_and_cleared(db_session, engine_under_test, remote):
    budget, txn, _ = _seed(db_session)
    await engine_under_test.sync()

    LedgerService(db_session).delete_budget(budget.id)
    report = await engine_under_test.sync()

    assert report.deleted == 2
    assert ("budgets", budget.id) in remote.deleted
    assert ("transactions", txn.id) in remote.deleted
    assert budget.id not in remote.rows["budgets"]
    db_session.expire_all()
    assert all(not t.dirty for t in db_session.query(models.DeletedRecord))


@pytest.mark.asyncio
async def test_failed_tombstone_stays_dirty_without_blocking_others(db_session, engine_under_test, remote):
    budget, txn, _ = _seed(db_session)
    await engine_under_test.sync()
    LedgerService(db_session).delete_budget(budget.id)
    remote.fail.add(("delete", "transactions"))

    report = await engine_under_test.sync()

    assert report.deleted == 1
    assert not report.ok
    db_session.expire_all()
    assert replica.pending_tombstone_ids(db_session, models.SyncTable.TRANSACTIONS) == {txn.id}
    assert replica.pending_tombstone_ids(db_session, models.SyncTable.BUDGETS) == set()

    # 원격 복구 후 재시도
    remote.fail.clear()
    await engine_under_test.sync()
    assert ("transactions", txn.id) in remote.deleted


@pytest.mark.asyncio
async def test_pull_does_not_resurrect_pending_deletes(db_session, engine_under_test, remote):
    _, _, bond = _seed(db_session)
    await engine_under_test.sync()
    LedgerService(db_session).delete_bond(bond.id)
    # 다른 기기에서 같은 채권을 수정
    remote.server_write("bonds", {**remote.rows["bonds"][bond.id], "rate": 9.9})

    await engine_under_test.pull_changes(SyncReport())

    db_session.expire_all()
    assert db_session.get(models.Bond, bond.id) is None


@pytest.mark.asyncio
async def test_upsert_failure_defers_pull_and_keeps_watermark(db_session, engine_under_test, remote):
    _seed(db_session)
    remote.fail.add(("upsert", "budgets"))
    remote.server_write(
        "months",
        {"id": "2030-01", "expected_income": 1, "savings_goal": 0, "user_id": "user-1"},
    )

    report = await engine_under_test.sync()

    assert not report.ok
    assert not report.watermark_advanced
    db_session.expire_all()
    assert db_session.get(models.Month, "2030-01") is None
    assert db_session.get(models.Month, "2025-01").dirty is False  # other tables still pushed
    assert all(b.dirty for b in db_session.query(models.Budget))
    assert engine_under_test.get_watermark() is None


@pytest.mark.asyncio
async def test_pull_failure_keeps_watermark(db_session, engine_under_test, remote):
    _seed(db_session)
    await engine_under_test.sync()
    first = engine_under_test.get_watermark()
    remote.fail.add(("select", "bonds"))
    remote.server_write(
        "months",
        {"id": "2025-03", "expected_income": 7, "savings_goal": 0, "user_id": "user-1"},
    )

    report = SyncReport()
    assert await engine_under_test.pull_changes(report) is False

    assert engine_under_test.get_watermark() == first
    db_session.expire_all()
    # 성공한 테이블은 그대로 적용
    assert db_session.get(models.Month, "2025-03") is not None


@pytest.mark.asyncio
async def test_row_edited_during_push_stays_dirty(db_session, session_factory, engine_under_test, remote):
    budget, _, _ = _seed(db_session)

    async def _edit_in_flight(table: str) -> None:
        if table == "budgets":
            with session_factory() as db:
                LedgerService(db).update_budget(budget.id, planned_amount=42)

    remote.after_upsert = _edit_in_flight
    report = await engine_under_test.sync()

    assert report.stale == {"budgets": 1}
    db_session.expire_all()
    local = db_session.get(models.Budget, budget.id)
    assert local.dirty is True
    assert local.planned_amount == 42

    remote.after_upsert = None
    await engine_under_test.sync()
    assert remote.rows["budgets"][budget.id]["planned_amount"] == 42


@pytest.mark.asyncio
async def test_malformed_remote_rows_are_skipped(db_session, engine_under_test, remote):
    remote.server_write("months", {"id": "bad", "expected_income": 1, "savings_goal": 0})
    remote.server_write("months", {"id": "2025-04", "expected_income": 1, "savings_goal": 0})

    report = await engine_under_test.sync()

    assert report.rejected == 1
    assert report.pulled["months"] == 1
    assert report.watermark_advanced


@pytest.mark.asyncio
async def test_sync_without_session_is_skipped(db_session, session_factory, remote):
    _seed(db_session)
    engine = SyncEngine(session_factory, remote, FakeIdentityProvider(None))

    report = await engine.sync()

    assert report.skipped
    assert remote.calls == []


@pytest.mark.asyncio
async def test_force_pull_all_overwrites_local_changes(db_session, engine_under_test, remote):
    budget, _, _ = _seed(db_session)
    await engine_under_test.sync()
    LedgerService(db_session).update_budget(budget.id, category="Local only")

    await engine_under_test.force_pull_all()

    db_session.expire_all()
    local = db_session.get(models.Budget, budget.id)
    assert local.category == "Groceries"
    assert local.dirty is False

    remote.fail.add(("select", "months"))
    with pytest.raises(RemoteError):
        await engine_under_test.force_pull_all()


@pytest.mark.asyncio
async def test_reset_sync_state_repushes_everything(db_session, engine_under_test, remote):
    _seed(db_session)
    await engine_under_test.sync()

    engine_under_test.reset_sync_state()

    assert engine_under_test.get_watermark() is None
    counts = engine_under_test.pending_counts()
    assert counts["months"] == 1 and counts["bonds"] == 1
    report = await engine_under_test.sync()
    assert report.pushed["transactions"] == 1



@pytest.mark.asyncio
async def test_storage_error_on_one_tombstone_does_not_orphan_the_others(
    db_session, engine_under_test, remote, monkeypatch
):
    budget, txn, _ = _seed(db_session)
    budget_id, txn_id = budget.id, txn.id
    await engine_under_test.sync()
    LedgerService(db_session).delete_budget(budget_id)
    txn_log_id = next(
        t.id for t in replica.dirty_tombstones(db_session) if t.item_id == txn_id
    )
    original = replica.clear_tombstone

    def _flaky(db, log_id):
        if log_id == txn_log_id:
            raise RuntimeError("disk I/O error")
        original(db, log_id)

    monkeypatch.setattr(replica, "clear_tombstone", _flaky)

    report = await engine_under_test.sync()

    assert report.deleted == 1
    assert any("disk I/O error" in e for e in report.errors)
    assert ("budgets", budget_id) in remote.deleted
    assert ("transactions", txn_id) in remote.deleted
    db_session.expire_all()
    # 실패한 툼스톤만 남아 다음 주기에 재시도
    assert replica.pending_tombstone_ids(db_session, models.SyncTable.TRANSACTIONS) == {txn_id}
    assert replica.pending_tombstone_ids(db_session, models.SyncTable.BUDGETS) == set()
