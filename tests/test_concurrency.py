"""
Concurrency tests.

Many threads deducting from the same balance must never overdraw it: with
``remaining = R`` and each deduction costing ``c``, exactly ``floor(R / c)``
deductions succeed.
"""

import threading

from ai_credit_engine.core.errors import InsufficientMemberCredits, InsufficientOrgCredits

from .conftest import MEMBER, ORG, OWNER


def _run_threads(count, target):
    barrier = threading.Barrier(count)
    results = []
    lock = threading.Lock()

    def _worker():
        barrier.wait()
        outcome = target()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


class TestConcurrentDeductions:
    """Parallel deductions are linearizable per balance."""

    def test_member_allocation_never_overdrawn(self, engine):
        remaining, cost, workers = 100, 7, 24
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", remaining)

        results = _run_threads(workers, lambda: engine.deduct(MEMBER, "chat", cost, "parallel"))

        successes = [r for r in results if r.success]
        failures = [r for r in results if not r.success]
        assert len(successes) == remaining // cost
        assert all(isinstance(r.error, InsufficientMemberCredits) for r in failures)
        assert engine.get_member_allocation(ORG, "member-1", "chat").credits_remaining == remaining % cost
        assert engine.verify_ledger(ORG) == []

    def test_org_pool_never_overdrawn(self, engine):
        remaining, cost, workers = 50, 6, 16
        engine.grant_monthly_credits(ORG, 30)
        engine.grant_topup(ORG, 20, "inv-1")

        results = _run_threads(workers, lambda: engine.deduct(OWNER, "chat", cost, "parallel"))

        successes = [r for r in results if r.success]
        assert len(successes) == remaining // cost
        assert all(isinstance(r.error, InsufficientOrgCredits) for r in results if not r.success)
        pool = engine.get_balance(ORG)
        assert pool.effective_total == remaining % cost
        assert pool.monthly_credits_remaining == 0

    def test_balance_chain_is_linear(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", 60)

        _run_threads(12, lambda: engine.deduct(MEMBER, "chat", 5, "parallel"))

        entries = [
            e for e in engine.store.list_entries(ORG)
            if e.subject_user_id == "member-1" and not e.is_mirror
        ]
        for previous, entry in zip(entries, entries[1:]):
            assert entry.balance_before == previous.balance_after
        assert entries[-1].balance_after == 0
