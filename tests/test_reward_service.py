"""Tests for funding and reward allocation."""

import asyncio
from decimal import Decimal

import pytest

from bountypool.models import AllocationStatus, ChainOperationStatus, Currency, WindowKind
from bountypool.services.errors import (
    ChainPendingError,
    ChainRejectedError,
    ChainUnreachableError,
    InvalidRequestError,
    LimitExceededError,
    NotAuthorizedError,
    NotFoundError,
    TransientError,
)
from bountypool.services.principal import ANONYMOUS
from bountypool.services.reward_ledger import RewardLedger, repository_subject, user_subject
from bountypool.services.reward_service import RewardService, allocation_key
from conftest import ALICE, BOB

WALLET = "0x" + "ab" * 20


async def consumed(ledger, subject: str, currency: Currency, kind: WindowKind) -> Decimal:
    return (await ledger.status(subject, currency, kind)).consumed


@pytest.fixture
def build_service(session_factory, registry, ledger, gateway, access_gate, repo_locks):
    """RewardService over the shared fixtures, with some parts swapped."""

    def build(**overrides) -> RewardService:
        parts = dict(
            session_factory=session_factory,
            registry=registry,
            ledger=ledger,
            gateway=gateway,
            access_gate=access_gate,
            repo_locks=repo_locks,
            request_timeout=10,
        )
        parts.update(overrides)
        return RewardService(**parts)

    return build


class TestFundRepository:
    """Tests for RewardService.fund_repository."""

    async def test_second_funding_over_ceiling_is_refused(
        self, reward_service, registered_repo, chain
    ):
        await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")

        with pytest.raises(LimitExceededError) as exc_info:
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-2")

        assert exc_info.value.remaining == Decimal("50")
        assert len(chain.submissions) == 1

    async def test_only_registrant_may_fund(self, reward_service, registered_repo):
        with pytest.raises(NotAuthorizedError):
            await reward_service.fund_repository(BOB, 42, Currency.USDC, Decimal("10"), "fund-1")
        with pytest.raises(NotAuthorizedError):
            await reward_service.fund_repository(
                ANONYMOUS, 42, Currency.USDC, Decimal("10"), "fund-2"
            )

    async def test_inactive_repository(self, reward_service, registry, registered_repo):
        await registry.set_active(42, False)

        with pytest.raises(InvalidRequestError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("10"), "fund-1")

    async def test_unknown_repository(self, reward_service):
        with pytest.raises(NotFoundError):
            await reward_service.fund_repository(ALICE, 999, Currency.USDC, Decimal("10"), "fund-1")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("NaN")])
    async def test_invalid_amount(self, reward_service, registered_repo, amount):
        with pytest.raises(InvalidRequestError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, amount, "fund-1")

    async def test_funder_window_spans_repositories(
        self, reward_service, registry, ledger, registered_repo
    ):
        await registry.upsert(43, "alice/gadgets", ALICE.user_id, 7, is_private=False)
        await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")

        with pytest.raises(LimitExceededError) as exc_info:
            await reward_service.fund_repository(ALICE, 43, Currency.USDC, Decimal("100"), "fund-2")

        assert exc_info.value.subject_id == user_subject(ALICE.user_id)
        # The repository admission made before the refusal is given back
        assert await consumed(
            ledger, repository_subject(43), Currency.USDC, WindowKind.FUNDING
        ) == 0

    async def test_rejected_funding_releases_admission(
        self, reward_service, ledger, registered_repo, chain
    ):
        chain.outcomes = ["reject"]

        with pytest.raises(ChainRejectedError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")

        assert await consumed(ledger, repository_subject(42), Currency.USDC, WindowKind.FUNDING) == 0
        await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("150"), "fund-2")

    async def test_pending_funding_keeps_admission_and_resumes(
        self, reward_service, ledger, registered_repo, chain
    ):
        chain.outcomes = ["pending"]
        with pytest.raises(ChainPendingError):
            await reward_service.fund_repository(
                ALICE, 42, Currency.USDC, Decimal("100"), idempotency_key="fund-abc"
            )

        with pytest.raises(LimitExceededError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-def")

        chain.mine("fund-abc")
        tx = await reward_service.fund_repository(
            ALICE, 42, Currency.USDC, Decimal("100"), idempotency_key="fund-abc"
        )

        assert tx.tx_hash == chain.operations["fund-abc"].tx.tx_hash
        assert len(chain.submissions) == 1
        assert await consumed(
            ledger, repository_subject(42), Currency.USDC, WindowKind.FUNDING
        ) == Decimal("100")

    async def test_same_key_after_confirmation_is_replayed(
        self, reward_service, ledger, registered_repo, chain
    ):
        first = await reward_service.fund_repository(
            ALICE, 42, Currency.USDC, Decimal("100"), idempotency_key="fund-abc"
        )
        second = await reward_service.fund_repository(
            ALICE, 42, Currency.USDC, Decimal("100"), idempotency_key="fund-abc"
        )

        assert first == second
        assert len(chain.submissions) == 1
        assert await consumed(
            ledger, user_subject(ALICE.user_id), Currency.USDC, WindowKind.FUNDING
        ) == Decimal("100")

    async def test_same_key_with_other_amount_is_refused(self, reward_service, registered_repo):
        await reward_service.fund_repository(
            ALICE, 42, Currency.USDC, Decimal("100"), idempotency_key="fund-abc"
        )

        with pytest.raises(InvalidRequestError):
            await reward_service.fund_repository(
                ALICE, 42, Currency.USDC, Decimal("10"), idempotency_key="fund-abc"
            )

    async def test_concurrent_funding_respects_ceiling(self, reward_service, registered_repo):
        results = await asyncio.gather(
            *(
                reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("60"), f"fund-{i}")
                for i in range(4)
            ),
            return_exceptions=True,
        )

        assert sum(not isinstance(r, Exception) for r in results) == 2
        assert sum(isinstance(r, LimitExceededError) for r in results) == 2

    async def test_key_is_required(self, reward_service, registered_repo, chain):
        with pytest.raises(InvalidRequestError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("10"), "")

        assert chain.submissions == []

    async def test_retry_after_unreachable_counts_once(
        self, reward_service, ledger, registered_repo, chain
    ):
        chain.outcomes = ["unreachable"]
        with pytest.raises(ChainUnreachableError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("50"), "fund-1")

        await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("50"), "fund-1")

        assert list(chain.operations) == ["fund-1"]
        assert await consumed(
            ledger, repository_subject(42), Currency.USDC, WindowKind.FUNDING
        ) == Decimal("50")

    async def test_deadline_during_admission_gives_everything_back(
        self, build_service, session_factory, ledger, registered_repo, chain
    ):
        class SlowFunderLedger(RewardLedger):
            async def admit(self, subject_id, currency, amount, kind):
                if subject_id.startswith("user:"):
                    await asyncio.sleep(2)
                return await super().admit(subject_id, currency, amount, kind)

        service = build_service(
            ledger=SlowFunderLedger(session_factory, funding_limits={"USDC": Decimal("150")}),
            request_timeout=0.2,
        )

        with pytest.raises(TransientError):
            await service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")

        assert chain.submissions == []
        assert await consumed(ledger, repository_subject(42), Currency.USDC, WindowKind.FUNDING) == 0
        assert (await service.reconcile_pending()).checked == 0

    async def test_deadline_during_submission_keeps_admission(
        self, build_service, reward_service, ledger, registered_repo, chain
    ):
        chain.delay = 2
        with pytest.raises(TransientError):
            await build_service(request_timeout=0.2).fund_repository(
                ALICE, 42, Currency.USDC, Decimal("100"), "fund-1"
            )

        assert await consumed(
            ledger, repository_subject(42), Currency.USDC, WindowKind.FUNDING
        ) == Decimal("100")

        # The sweep submits it under the same key once the chain answers again
        chain.delay = 0
        report = await reward_service.reconcile_pending()

        assert report.confirmed == 1
        assert chain.operations["fund-1"].status == ChainOperationStatus.CONFIRMED
        assert len(chain.submissions) == 1


class TestAllocateReward:
    """Tests for RewardService.allocate_reward."""

    async def test_allocation_is_idempotent(self, reward_service, registered_repo, chain):
        first = await reward_service.allocate_reward(
            ALICE, 42, 5, Currency.USDC, Decimal("50"), WALLET
        )
        second = await reward_service.allocate_reward(
            ALICE, 42, 5, Currency.USDC, Decimal("50"), WALLET
        )

        assert first.tx_hash == second.tx_hash
        assert len(chain.submissions) == 1

        allocation = await reward_service.get_allocation(BOB, 42, 5, Currency.USDC)
        assert allocation.status == AllocationStatus.CONFIRMED
        assert allocation.chain_tx_hash == first.tx_hash
        assert allocation.idempotency_key == allocation_key(42, 5, Currency.USDC, 1)

    @pytest.mark.parametrize(
        "wallet", ["", "0x123", "ab" * 21, "0x" + "g" * 40, "xdc" + "a" * 39]
    )
    async def test_invalid_wallet(self, reward_service, registered_repo, wallet):
        with pytest.raises(InvalidRequestError):
            await reward_service.allocate_reward(ALICE, 42, 5, Currency.USDC, Decimal("1"), wallet)

    async def test_xdc_prefixed_wallet(self, reward_service, registered_repo):
        await reward_service.allocate_reward(
            ALICE, 42, 5, Currency.XDC, Decimal("1"), "xdc" + "A1" * 20
        )

    async def test_only_registrant_may_allocate(self, reward_service, registered_repo):
        with pytest.raises(NotAuthorizedError):
            await reward_service.allocate_reward(BOB, 42, 5, Currency.USDC, Decimal("1"), WALLET)

    async def test_transfer_ceiling(self, reward_service, registered_repo):
        await reward_service.allocate_reward(ALICE, 42, 1, Currency.USDC, Decimal("60"), WALLET)

        with pytest.raises(LimitExceededError):
            await reward_service.allocate_reward(
                ALICE, 42, 2, Currency.USDC, Decimal("60"), WALLET
            )

        with pytest.raises(NotFoundError):
            await reward_service.get_allocation(ALICE, 42, 2, Currency.USDC)

    async def test_rejected_attempt_is_retried_under_new_key(
        self, reward_service, ledger, registered_repo, chain
    ):
        chain.outcomes = ["reject"]
        with pytest.raises(ChainRejectedError):
            await reward_service.allocate_reward(
                ALICE, 42, 5, Currency.USDC, Decimal("80"), WALLET
            )

        failed = await reward_service.get_allocation(ALICE, 42, 5, Currency.USDC)
        assert failed.status == AllocationStatus.FAILED
        assert failed.error_message == "insufficient pool balance"
        assert await consumed(
            ledger, repository_subject(42), Currency.USDC, WindowKind.TRANSFER
        ) == 0

        tx = await reward_service.allocate_reward(
            ALICE, 42, 5, Currency.USDC, Decimal("80"), WALLET
        )

        retried = await reward_service.get_allocation(ALICE, 42, 5, Currency.USDC)
        assert retried.attempt == 2
        assert retried.idempotency_key == allocation_key(42, 5, Currency.USDC, 2)
        assert retried.chain_tx_hash == tx.tx_hash

    async def test_pending_allocation_is_reconciled_not_duplicated(
        self, reward_service, registered_repo, chain
    ):
        chain.outcomes = ["pending"]
        with pytest.raises(ChainPendingError):
            await reward_service.allocate_reward(
                ALICE, 42, 5, Currency.USDC, Decimal("50"), WALLET
            )

        with pytest.raises(ChainPendingError):
            await reward_service.allocate_reward(
                ALICE, 42, 5, Currency.USDC, Decimal("50"), WALLET
            )

        chain.mine(allocation_key(42, 5, Currency.USDC, 1))
        tx = await reward_service.allocate_reward(
            ALICE, 42, 5, Currency.USDC, Decimal("50"), WALLET
        )

        allocation = await reward_service.get_allocation(ALICE, 42, 5, Currency.USDC)
        assert allocation.status == AllocationStatus.CONFIRMED
        assert allocation.attempt == 1
        assert allocation.chain_tx_hash == tx.tx_hash
        assert len(chain.submissions) == 1

    async def test_private_allocation_hidden_from_outsiders(
        self, reward_service, registry, github
    ):
        github.add_repo("alice/secret", 2, private=True)
        github.install_on_repo("alice/secret", 7)
        github.collaborators["alice/secret"].add("alice")
        await registry.upsert(2, "alice/secret", ALICE.user_id, 7, is_private=True)
        await reward_service.allocate_reward(ALICE, 2, 5, Currency.USDC, Decimal("5"), WALLET)

        with pytest.raises(NotFoundError):
            await reward_service.get_allocation(BOB, 2, 5, Currency.USDC)

        allocation = await reward_service.get_allocation(ALICE, 2, 5, Currency.USDC)
        assert allocation.status == AllocationStatus.CONFIRMED


class TestReconcilePending:
    """Tests for RewardService.reconcile_pending."""

    async def test_sweep_settles_each_allocation(self, reward_service, registered_repo, chain):
        chain.outcomes = ["pending", "pending", "pending"]
        for issue_id in (1, 2, 3):
            with pytest.raises(ChainPendingError):
                await reward_service.allocate_reward(
                    ALICE, 42, issue_id, Currency.XDC, Decimal("10"), WALLET
                )

        chain.mine(allocation_key(42, 1, Currency.XDC, 1))
        chain.drop(allocation_key(42, 2, Currency.XDC, 1))
        del chain.operations[allocation_key(42, 3, Currency.XDC, 1)]

        report = await reward_service.reconcile_pending()

        assert report.checked == 3
        assert report.confirmed == 1
        assert report.failed == 1
        assert report.inconsistent == 1
        assert (await reward_service.get_allocation(ALICE, 42, 1, Currency.XDC)).status == (
            AllocationStatus.CONFIRMED
        )
        assert (await reward_service.get_allocation(ALICE, 42, 2, Currency.XDC)).status == (
            AllocationStatus.FAILED
        )
        assert (await reward_service.get_allocation(ALICE, 42, 3, Currency.XDC)).status == (
            AllocationStatus.PENDING
        )

    async def test_unseen_submission_is_resubmitted_under_same_key(
        self, reward_service, registered_repo, chain
    ):
        chain.outcomes = ["unreachable"]
        with pytest.raises(ChainUnreachableError):
            await reward_service.allocate_reward(
                ALICE, 42, 5, Currency.USDC, Decimal("10"), WALLET
            )

        report = await reward_service.reconcile_pending()

        assert report.confirmed == 1
        key = allocation_key(42, 5, Currency.USDC, 1)
        assert chain.operations[key].status.value == "confirmed"
        assert len(chain.submissions) == 2

    async def test_dropped_deposit_gives_admissions_back(
        self, reward_service, ledger, registered_repo, chain
    ):
        chain.outcomes = ["pending"]
        with pytest.raises(ChainPendingError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")
        chain.drop("fund-1")

        report = await reward_service.reconcile_pending()

        assert (report.checked, report.failed) == (1, 1)
        for subject in (repository_subject(42), user_subject(ALICE.user_id)):
            assert await consumed(ledger, subject, Currency.USDC, WindowKind.FUNDING) == 0
        assert (await reward_service.reconcile_pending()).checked == 0

    async def test_mined_deposit_keeps_admissions(
        self, reward_service, ledger, registered_repo, chain
    ):
        chain.outcomes = ["pending"]
        with pytest.raises(ChainPendingError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")
        chain.mine("fund-1")

        report = await reward_service.reconcile_pending()

        assert report.confirmed == 1
        assert await consumed(
            ledger, repository_subject(42), Currency.USDC, WindowKind.FUNDING
        ) == Decimal("100")
        assert (await reward_service.reconcile_pending()).checked == 0

    async def test_rejected_deposit_is_released_once(
        self, reward_service, ledger, registered_repo, chain
    ):
        chain.outcomes = ["pending"]
        with pytest.raises(ChainPendingError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")
        chain.drop("fund-1")
        await reward_service.reconcile_pending()
        await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-2")

        # Retrying the dropped deposit replays the rejection without a second release
        with pytest.raises(ChainRejectedError):
            await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")

        assert await consumed(
            ledger, repository_subject(42), Currency.USDC, WindowKind.FUNDING
        ) == Decimal("100")

    async def test_nothing_pending(self, reward_service):
        report = await reward_service.reconcile_pending()
        assert report.checked == 0


class TestFundingStatus:
    """Tests for RewardService.funding_status."""

    async def test_reports_repository_and_funder_windows(self, reward_service, registered_repo):
        await reward_service.fund_repository(ALICE, 42, Currency.USDC, Decimal("100"), "fund-1")

        status = await reward_service.funding_status(ALICE, 42)

        assert len(status.repository_windows) == len(Currency) * len(WindowKind)
        usdc_funding = next(
            w
            for w in status.repository_windows
            if w.currency == Currency.USDC and w.kind == WindowKind.FUNDING
        )
        assert usdc_funding.remaining == Decimal("50")
        assert [w.currency for w in status.funder_windows] == list(Currency)

    async def test_anonymous_sees_only_repository_windows(self, reward_service, registered_repo):
        status = await reward_service.funding_status(ANONYMOUS, 42)

        assert status.funder_windows == []
