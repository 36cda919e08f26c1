import datetime
import math
import threading

import pytest
from sqlalchemy import func
from sqlmodel import Session, select

from h2_registry.batch import services as batch_services
from h2_registry.batch.models import Batch
from h2_registry.batch.schemas import BatchCreate, VerificationResult
from h2_registry.core.error_handling import (
    ForbiddenError,
    InvalidInputError,
    InvalidRecipientError,
    InvalidStateError,
    NotFoundError,
)
from h2_registry.core.models.base import (
    BatchStatus,
    CreditEventType,
    CreditStatus,
    UserRoles,
)
from h2_registry.credit import services as credit_services
from h2_registry.credit.models import Credit
from h2_registry.event import services as event_services
from h2_registry.event.models import CreditEvent
from h2_registry.settings import LedgerConfig
from h2_registry.user.models import User


class TestMintCredit:
    def test_mint_credit(
        self,
        write_session: Session,
        fake_db_approved_batch: Batch,
        fake_db_certifier: User,
        fake_db_producer: User,
    ):
        credit, mint_event = credit_services.mint_credit(
            fake_db_approved_batch.id,  # type: ignore[arg-type]
            1500,
            fake_db_certifier,
            write_session,
            LedgerConfig(),
            certification_standard="CertifHy",
        )

        assert credit.credit_id.startswith("H2C-")
        assert credit.supply == 1500
        assert credit.minted_supply == 1500
        assert credit.status == CreditStatus.ACTIVE
        assert credit.owner_id == fake_db_producer.id
        assert credit.certification_standard == "CertifHy"
        assert credit.transfer_history == []
        assert credit.retirement_receipt is None

        assert mint_event.event_type == CreditEventType.MINT
        assert mint_event.credit_id == credit.id
        assert mint_event.from_user == fake_db_certifier.id
        assert mint_event.to_user == fake_db_producer.id
        assert mint_event.amount == 1500
        assert len(mint_event.transaction_hash) == 64

        write_session.refresh(fake_db_approved_batch)
        assert fake_db_approved_batch.status == BatchStatus.MINTED

    def test_mint_credit_from_pending_batch(
        self,
        write_session: Session,
        fake_db_pending_batch: Batch,
        fake_db_certifier: User,
    ):
        with pytest.raises(InvalidStateError):
            credit_services.mint_credit(
                fake_db_pending_batch.id,  # type: ignore[arg-type]
                1500,
                fake_db_certifier,
                write_session,
            )

        assert Credit.all(write_session) == []

    def test_mint_credit_twice(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_approved_batch: Batch,
        fake_db_certifier: User,
    ):
        with pytest.raises(InvalidStateError):
            credit_services.mint_credit(
                fake_db_approved_batch.id,  # type: ignore[arg-type]
                100,
                fake_db_certifier,
                write_session,
            )

        assert len(Credit.all(write_session)) == 1

    @pytest.mark.parametrize("supply", [0, -10, math.inf, math.nan])
    def test_mint_credit_requires_positive_supply(
        self,
        write_session: Session,
        fake_db_approved_batch: Batch,
        fake_db_certifier: User,
        supply: float,
    ):
        with pytest.raises(InvalidInputError):
            credit_services.mint_credit(
                fake_db_approved_batch.id,  # type: ignore[arg-type]
                supply,
                fake_db_certifier,
                write_session,
            )

        write_session.refresh(fake_db_approved_batch)
        assert fake_db_approved_batch.status == BatchStatus.APPROVED
        assert Credit.all(write_session) == []

    def test_mint_credit_missing_batch(
        self, write_session: Session, fake_db_certifier: User
    ):
        with pytest.raises(NotFoundError):
            credit_services.mint_credit(999, 1500, fake_db_certifier, write_session)

    def test_mint_is_all_or_nothing(
        self,
        write_session: Session,
        session_factory,
        fake_db_approved_batch: Batch,
        fake_db_certifier: User,
        monkeypatch: pytest.MonkeyPatch,
    ):
        def failing_append_event(*args, **kwargs):
            raise RuntimeError("event store unavailable")

        monkeypatch.setattr(event_services, "append_event", failing_append_event)

        with pytest.raises(RuntimeError, match="event store unavailable"):
            credit_services.mint_credit(
                fake_db_approved_batch.id,  # type: ignore[arg-type]
                1500,
                fake_db_certifier,
                write_session,
            )

        with session_factory() as session:
            assert session.exec(select(func.count()).select_from(Credit)).one() == 0
            assert session.exec(select(func.count()).select_from(CreditEvent)).one() == 0
            batch = session.get(Batch, fake_db_approved_batch.id)
            assert batch is not None
            assert batch.status == BatchStatus.APPROVED
            assert batch.version == 2


class TestTransferCredit:
    def test_transfer_credit(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
    ):
        credit, transfer_event = credit_services.transfer_credit(
            fake_db_credit.id,  # type: ignore[arg-type]
            fake_db_producer,
            fake_db_buyer.id,  # type: ignore[arg-type]
            500,
            write_session,
            LedgerConfig(),
        )

        assert credit.owner_id == fake_db_buyer.id
        # Transfers move ownership without touching supply or status
        assert credit.supply == 1500
        assert credit.status == CreditStatus.ACTIVE
        assert credit.transferred_total == 500
        assert credit.provenance_headroom == 1000

        assert len(credit.transfer_history) == 1
        record = credit.transfer_history[0]
        assert record["from_user"] == fake_db_producer.id
        assert record["to_user"] == fake_db_buyer.id
        assert record["transfer_amount"] == 500
        assert record["transaction_hash"] == transfer_event.transaction_hash

        assert transfer_event.event_type == CreditEventType.TRANSFER
        assert transfer_event.details["previous_owner"] == fake_db_producer.id

    def test_transfer_by_non_owner(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_buyer: User,
        fake_db_buyer_2: User,
    ):
        with pytest.raises(ForbiddenError):
            credit_services.transfer_credit(
                fake_db_credit.id,  # type: ignore[arg-type]
                fake_db_buyer,
                fake_db_buyer_2.id,  # type: ignore[arg-type]
                100,
                write_session,
            )

    @pytest.mark.parametrize("amount", [0, -1, 1500.5, math.inf, -math.inf, math.nan])
    def test_transfer_invalid_amount(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
        amount: float,
    ):
        with pytest.raises(InvalidInputError):
            credit_services.transfer_credit(
                fake_db_credit.id,  # type: ignore[arg-type]
                fake_db_producer,
                fake_db_buyer.id,  # type: ignore[arg-type]
                amount,
                write_session,
            )

        write_session.refresh(fake_db_credit)
        assert fake_db_credit.version == 1
        assert fake_db_credit.transfer_history == []

    def test_transfer_invalid_recipient(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        user_factory,
    ):
        inactive_buyer = user_factory(UserRoles.BUYER, "inactive_buyer", is_active=False)

        for to_user_id in [fake_db_producer.id, inactive_buyer.id, 999]:
            with pytest.raises(InvalidRecipientError):
                credit_services.transfer_credit(
                    fake_db_credit.id,  # type: ignore[arg-type]
                    fake_db_producer,
                    to_user_id,  # type: ignore[arg-type]
                    100,
                    write_session,
                )

        write_session.refresh(fake_db_credit)
        assert fake_db_credit.owner_id == fake_db_producer.id
        assert fake_db_credit.version == 1
        assert len(event_services.list_events_for_credit(fake_db_credit.id, write_session)) == 1  # type: ignore[arg-type]

    def test_transfer_missing_credit(
        self, write_session: Session, fake_db_producer: User, fake_db_buyer: User
    ):
        with pytest.raises(NotFoundError):
            credit_services.transfer_credit(
                999, fake_db_producer, fake_db_buyer.id, 100, write_session  # type: ignore[arg-type]
            )

    def test_transfers_are_bounded_by_minted_supply(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
        fake_db_buyer_2: User,
    ):
        credit_services.transfer_credit(
            fake_db_credit.id, fake_db_producer, fake_db_buyer.id, 1000, write_session  # type: ignore[arg-type]
        )

        with pytest.raises(InvalidInputError):
            credit_services.transfer_credit(
                fake_db_credit.id, fake_db_buyer, fake_db_buyer_2.id, 600, write_session  # type: ignore[arg-type]
            )

        credit, _ = credit_services.transfer_credit(
            fake_db_credit.id, fake_db_buyer, fake_db_buyer_2.id, 500, write_session  # type: ignore[arg-type]
        )
        assert credit.owner_id == fake_db_buyer_2.id
        assert credit.provenance_headroom == 0

        # Nothing left to attribute to a retirement
        with pytest.raises(InvalidInputError):
            credit_services.retire_credit(
                credit.id,  # type: ignore[arg-type]
                fake_db_buyer_2,
                "Offsetting 2024 emissions",
                write_session,
            )

    def test_concurrent_transfers_cannot_both_succeed(
        self,
        session_factory,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
        fake_db_buyer_2: User,
        ledger_config: LedgerConfig,
        monkeypatch: pytest.MonkeyPatch,
    ):
        barrier = threading.Barrier(2, timeout=10)
        get_credit_for_update = credit_services.get_credit_for_update

        def get_credit_then_wait(credit_id: int, write_session: Session) -> Credit:
            credit = get_credit_for_update(credit_id, write_session)
            # Both transfers hold the same stale version before either writes
            barrier.wait()
            return credit

        monkeypatch.setattr(credit_services, "get_credit_for_update", get_credit_then_wait)

        outcomes: list[object] = []
        outcomes_lock = threading.Lock()

        def transfer(recipient: User) -> None:
            with session_factory() as session:
                try:
                    credit_services.transfer_credit(
                        fake_db_credit.id,  # type: ignore[arg-type]
                        fake_db_producer,
                        recipient.id,  # type: ignore[arg-type]
                        1000,
                        session,
                        ledger_config,
                    )
                    outcome: object = "transferred"
                except Exception as e:
                    outcome = e
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [
            threading.Thread(target=transfer, args=(recipient,))
            for recipient in (fake_db_buyer, fake_db_buyer_2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(outcomes) == 2
        assert outcomes.count("transferred") == 1
        failure = next(outcome for outcome in outcomes if outcome != "transferred")
        assert isinstance(failure, (InvalidStateError, InvalidInputError))

        with session_factory() as session:
            credit = session.get(Credit, fake_db_credit.id)
            assert credit is not None
            assert credit.version == 2
            assert credit.transferred_total == 1000
            assert len(credit.transfer_history) == 1
            assert len(event_services.list_events_for_credit(credit.id, session)) == 2  # type: ignore[arg-type]


class TestRetireCredit:
    def test_partial_retirement(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
    ):
        credit, retirement_event, receipt = credit_services.retire_credit(
            fake_db_credit.id,  # type: ignore[arg-type]
            fake_db_producer,
            "Carbon offset",
            write_session,
            amount=200,
            config=LedgerConfig(),
        )

        assert credit.supply == 1300
        # Retirement is terminal even when supply remains
        assert credit.status == CreditStatus.RETIRED
        assert credit.retirement_receipt is not None
        assert credit.retirement_receipt["receipt_id"] == receipt.receipt_id

        assert receipt.receipt_id.startswith("RET-")
        assert receipt.amount == 200
        assert receipt.carbon_offset == 100
        assert receipt.renewable_energy_equivalent == 500
        assert receipt.retired_by == fake_db_producer.id
        assert receipt.certificate_url == (
            f"/credits/{credit.id}/retirement-certificate/{receipt.receipt_id}"
        )

        assert retirement_event.event_type == CreditEventType.RETIRE
        assert retirement_event.from_user == retirement_event.to_user == fake_db_producer.id
        assert retirement_event.amount == 200

    def test_retire_after_transfer(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
    ):
        credit_services.transfer_credit(
            fake_db_credit.id, fake_db_producer, fake_db_buyer.id, 500, write_session  # type: ignore[arg-type]
        )

        with pytest.raises(InvalidInputError):
            credit_services.retire_credit(
                fake_db_credit.id,  # type: ignore[arg-type]
                fake_db_buyer,
                "Offsetting fleet emissions",
                write_session,
                amount=1001,
            )

        credit, _, receipt = credit_services.retire_credit(
            fake_db_credit.id,  # type: ignore[arg-type]
            fake_db_buyer,
            "Offsetting fleet emissions",
            write_session,
            amount=1000,
        )

        assert credit.supply == 500
        assert credit.status == CreditStatus.RETIRED
        assert receipt.carbon_offset == 500

    def test_retire_defaults_to_remaining_headroom(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
    ):
        credit_services.transfer_credit(
            fake_db_credit.id, fake_db_producer, fake_db_buyer.id, 500, write_session  # type: ignore[arg-type]
        )

        credit, _, receipt = credit_services.retire_credit(
            fake_db_credit.id,  # type: ignore[arg-type]
            fake_db_buyer,
            "Offsetting fleet emissions",
            write_session,
        )

        assert receipt.amount == 1000
        assert credit.supply == 500

    def test_retirement_is_terminal(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
    ):
        credit_services.retire_credit(
            fake_db_credit.id,  # type: ignore[arg-type]
            fake_db_producer,
            "Offsetting Q1 refinery emissions",
            write_session,
            amount=200,
        )

        with pytest.raises(InvalidStateError):
            credit_services.retire_credit(
                fake_db_credit.id,  # type: ignore[arg-type]
                fake_db_producer,
                "Retire the rest",
                write_session,
                amount=100,
            )

        with pytest.raises(InvalidStateError):
            credit_services.transfer_credit(
                fake_db_credit.id, fake_db_producer, fake_db_buyer.id, 100, write_session  # type: ignore[arg-type]
            )

    @pytest.mark.parametrize("reason", ["", "  ", "r" * 501])
    def test_retire_requires_valid_reason(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        reason: str,
    ):
        with pytest.raises(InvalidInputError):
            credit_services.retire_credit(
                fake_db_credit.id,  # type: ignore[arg-type]
                fake_db_producer,
                reason,
                write_session,
            )

    @pytest.mark.parametrize("amount", [0, -5, 1500.5, math.inf, math.nan])
    def test_retire_invalid_amount(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        amount: float,
    ):
        with pytest.raises(InvalidInputError):
            credit_services.retire_credit(
                fake_db_credit.id,  # type: ignore[arg-type]
                fake_db_producer,
                "Offsetting Q1 refinery emissions",
                write_session,
                amount=amount,
            )

        write_session.refresh(fake_db_credit)
        assert fake_db_credit.status == CreditStatus.ACTIVE
        assert fake_db_credit.supply == 1500
        assert fake_db_credit.retirement_receipt is None

    def test_retire_by_non_owner(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_buyer: User,
    ):
        with pytest.raises(ForbiddenError):
            credit_services.retire_credit(
                fake_db_credit.id,  # type: ignore[arg-type]
                fake_db_buyer,
                "Not mine to retire",
                write_session,
            )

    def test_retirement_certificate(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
    ):
        _, _, receipt = credit_services.retire_credit(
            fake_db_credit.id,  # type: ignore[arg-type]
            fake_db_producer,
            "Offsetting Q1 refinery emissions",
            write_session,
        )

        certificate = credit_services.get_retirement_certificate(
            fake_db_credit.id,  # type: ignore[arg-type]
            receipt.receipt_id,
            write_session,
            LedgerConfig(certificate_issuer="Test Registry"),
        )

        assert certificate.credit_id == fake_db_credit.credit_id
        assert certificate.amount == 1500
        assert certificate.carbon_offset == 750
        assert certificate.renewable_energy_equivalent == 3750
        assert certificate.certificate_number == f"CERT-{receipt.receipt_id}"
        assert certificate.issuer == "Test Registry"
        assert certificate.validity == "Permanent"

        with pytest.raises(NotFoundError):
            credit_services.get_retirement_certificate(
                fake_db_credit.id,  # type: ignore[arg-type]
                "RET-UNKNOWN",
                write_session,
            )

    def test_retirement_certificate_for_active_credit(
        self, write_session: Session, fake_db_credit: Credit
    ):
        with pytest.raises(NotFoundError):
            credit_services.get_retirement_certificate(
                fake_db_credit.id,  # type: ignore[arg-type]
                "RET-ANY",
                write_session,
            )


class TestCreditQueries:
    def _mint_second_credit(
        self,
        write_session: Session,
        producer: User,
        certifier: User,
        verification_result: VerificationResult,
    ) -> Credit:
        batch = batch_services.submit_batch(
            producer,
            BatchCreate(
                batch_number="BATCH-2024-002",
                kg_produced=500,
                kwh_used=40000,
                region="Patagonia",
                production_date=datetime.datetime(2024, 2, 1, tzinfo=datetime.timezone.utc),
                certificate_files=["certificates/batch-2024-002.pdf"],
            ),
            write_session,
        )
        batch_services.approve_batch(
            batch.id,  # type: ignore[arg-type]
            verification_result.model_copy(update={"trust_score": 70}),
            certifier,
            write_session,
        )
        credit, _ = credit_services.mint_credit(
            batch.id, 500, certifier, write_session  # type: ignore[arg-type]
        )
        return credit

    def test_list_available_credits(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_certifier: User,
        verification_result: VerificationResult,
    ):
        second_credit = self._mint_second_credit(
            write_session, fake_db_producer, fake_db_certifier, verification_result
        )

        credits, total, pages = credit_services.list_available_credits(write_session)
        assert total == 2
        assert pages == 1
        assert credits[0].id == second_credit.id

        credits, total, _ = credit_services.list_available_credits(
            write_session, region="patagonia"
        )
        assert [credit.id for credit in credits] == [second_credit.id]

        credits, total, _ = credit_services.list_available_credits(
            write_session, min_trust_score=90
        )
        assert [credit.id for credit in credits] == [fake_db_credit.id]

        credit_services.retire_credit(
            second_credit.id,  # type: ignore[arg-type]
            fake_db_producer,
            "Offsetting pilot plant emissions",
            write_session,
        )
        credits, total, _ = credit_services.list_available_credits(write_session)
        assert [credit.id for credit in credits] == [fake_db_credit.id]

    def test_list_credits_by_owner(
        self,
        write_session: Session,
        fake_db_credit: Credit,
        fake_db_producer: User,
        fake_db_buyer: User,
    ):
        credits, total, _ = credit_services.list_credits_by_owner(
            fake_db_producer.id, write_session  # type: ignore[arg-type]
        )
        assert total == 1

        credit_services.transfer_credit(
            fake_db_credit.id, fake_db_producer, fake_db_buyer.id, 100, write_session  # type: ignore[arg-type]
        )

        credits, total, _ = credit_services.list_credits_by_owner(
            fake_db_producer.id, write_session  # type: ignore[arg-type]
        )
        assert total == 0

        credits, total, _ = credit_services.list_credits_by_owner(
            fake_db_buyer.id, write_session, status=CreditStatus.ACTIVE  # type: ignore[arg-type]
        )
        assert [credit.id for credit in credits] == [fake_db_credit.id]

    def test_get_credit_by_credit_id(
        self, write_session: Session, fake_db_credit: Credit
    ):
        credit = credit_services.get_credit_by_credit_id(
            fake_db_credit.credit_id, write_session
        )
        assert credit.id == fake_db_credit.id

        with pytest.raises(NotFoundError):
            credit_services.get_credit_by_credit_id("H2C-MISSING-00000", write_session)
