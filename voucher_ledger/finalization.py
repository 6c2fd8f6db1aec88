"""
Payment Finalization Saga

Turns a batch of staged payments into finalized, balance-affecting,
tax-logged transactions:

    VALIDATING -> UNDO_CAPTURE -> BUDGET_UPDATE -> WHT_PROCESSING
        -> STATUS_UPDATE -> MASTER_LOG -> COMPLETED

Each step is its own atomic operation. A validation failure has no side
effects. A failure from UNDO_CAPTURE onward leaves the batch in ERROR with
every already-applied mutation in place; recovery is an operator decision,
using the batch's undo snapshot.
"""

import time
import uuid
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from enum import Enum

from .accounts import AccountKind, BalanceAccount, BalanceAccountStore
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .exceptions import AccountNotFound, LedgerError, PipelineError, ValidationError
from .ledger import LedgerService, LedgerSource, MutationMetadata, MutationResult
from .logging_config import get_logger, log_action
from .master_log import MasterLog, MasterLogEntry, transaction_id
from .payments import PaymentStatus, PaymentStore, SettlementStatus, StagedPayment
from .resolver import AccountResolver
from .storage import StorageInterface, StorageRecord
from .tax import TaxCalculator
from .tax_returns import TaxReturnLog
from .undo import UndoCapture

BATCHES_TABLE = "finalization_batches"
FAILURES_TABLE = "finalization_failures"


class FinalizationStep(Enum):
    """Saga states, in execution order"""
    VALIDATING = "VALIDATING"
    UNDO_CAPTURE = "UNDO_CAPTURE"
    BUDGET_UPDATE = "BUDGET_UPDATE"
    WHT_PROCESSING = "WHT_PROCESSING"
    STATUS_UPDATE = "STATUS_UPDATE"
    MASTER_LOG = "MASTER_LOG"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


StepCallback = Callable[[FinalizationStep, str], None]


def generate_batch_id() -> str:
    return f"BATCH-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"


@dataclass
class BatchMetadata:
    """Operator-supplied context for a finalization"""
    actor_id: Optional[str] = None
    voucher_reference: Optional[str] = None
    cash_flow_category: Optional[str] = None
    note: Optional[str] = None


@dataclass
class FinalizationBatch(StorageRecord):
    """Persistent state of one finalization run"""
    payment_ids: List[str]
    step: FinalizationStep
    actor_id: str
    voucher_reference: Optional[str] = None
    failed_step: Optional[FinalizationStep] = None
    error_type: Optional[str] = None
    error_detail: Optional[str] = None
    undo_snapshot_id: Optional[str] = None
    ledger_updates: List[Dict[str, Any]] = field(default_factory=list)
    tax_entry_ids: List[str] = field(default_factory=list)
    master_log_ids: List[str] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def batch_id(self) -> str:
        return self.id

    @property
    def is_terminal(self) -> bool:
        return self.step in (FinalizationStep.COMPLETED, FinalizationStep.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['step'] = self.step.value
        result['failed_step'] = self.failed_step.value if self.failed_step else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FinalizationBatch':
        values = dict(data)
        values['created_at'] = datetime.fromisoformat(values['created_at'])
        values['updated_at'] = datetime.fromisoformat(values['updated_at'])
        values['step'] = FinalizationStep(values['step'])
        if values.get('failed_step'):
            values['failed_step'] = FinalizationStep(values['failed_step'])
        if values.get('completed_at'):
            values['completed_at'] = datetime.fromisoformat(values['completed_at'])
        return cls(**values)


@dataclass
class FinalizationResult:
    """What the caller gets back from finalize_batch"""
    success: bool
    batch_id: str
    step: FinalizationStep
    ledger_updates: List[MutationResult] = field(default_factory=list)
    tax_entries: List[str] = field(default_factory=list)
    master_log_count: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    failed_step: Optional[FinalizationStep] = None
    error: Optional[str] = None
    undo_snapshot_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "batch_id": self.batch_id,
            "step": self.step.value,
            "ledger_updates": [u.to_dict() for u in self.ledger_updates],
            "tax_entries": list(self.tax_entries),
            "master_log_count": self.master_log_count,
            "errors": list(self.errors),
            "failed_step": self.failed_step.value if self.failed_step else None,
            "error": self.error,
            "undo_snapshot_id": self.undo_snapshot_id,
        }


@dataclass
class _AccountCharge:
    account: BalanceAccount
    amount: Decimal = Decimal('0')
    payment_ids: List[str] = field(default_factory=list)
    vendors: List[str] = field(default_factory=list)
    descriptions: List[str] = field(default_factory=list)


@dataclass
class _BatchPlan:
    payments: List[StagedPayment]
    budget_lines: Dict[str, BalanceAccount]  # payment id -> budget line
    banks: Dict[str, BalanceAccount]  # payment id -> bank, when given
    budget_impacts: Dict[str, Decimal]  # payment id -> impact on its budget line
    reporting_impacts: Dict[str, Decimal]  # payment id -> impact in reporting currency
    charges: Dict[str, _AccountCharge]  # account id -> summed outflow, first-seen order


class FinalizationPipeline:
    """
    Orchestrates the finalization saga for a batch of staged payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: BalanceAccountStore,
        resolver: AccountResolver,
        ledger: LedgerService,
        undo_capture: UndoCapture,
        payment_store: PaymentStore,
        tax_return_log: TaxReturnLog,
        master_log: MasterLog,
        audit_trail: AuditTrail,
        calculator: TaxCalculator,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.account_store = account_store
        self.resolver = resolver
        self.ledger = ledger
        self.undo_capture = undo_capture
        self.payment_store = payment_store
        self.tax_return_log = tax_return_log
        self.master_log = master_log
        self.audit_trail = audit_trail
        self.calculator = calculator
        self.config = config or get_config()
        self.paid_tolerance = Decimal(self.config.paid_tolerance)
        self.logger = get_logger("voucher_ledger.finalization")

    def finalize_batch(
        self,
        payments: Sequence[Union[str, StagedPayment]],
        metadata: Optional[BatchMetadata] = None,
        on_step_change: Optional[StepCallback] = None
    ) -> FinalizationResult:
        """
        Finalize a batch of staged payments

        Args:
            payments: Payment ids (or StagedPayment objects) in voucher order
            metadata: Actor, voucher reference and cash-flow category
            on_step_change: Called with (step, batch_id) on every state transition

        Returns:
            FinalizationResult; ``success`` is False when the batch stopped in ERROR

        Raises:
            ValidationError: If the batch is rejected before any side effect
            AccountNotFound: If an account reference does not resolve
        """
        metadata = metadata or BatchMetadata()
        actor_id = metadata.actor_id or self.config.default_actor
        batch_id = generate_batch_id()
        payment_ids = [p.id if isinstance(p, StagedPayment) else p for p in payments]

        self._notify(on_step_change, FinalizationStep.VALIDATING, batch_id)
        try:
            plan = self._validate(payment_ids)
        except ValidationError as exc:
            log_action(
                self.logger, "warning", f"Batch rejected: {exc}", user_id=actor_id,
                action="batch_rejected", correlation_id=batch_id, extra={"errors": exc.errors}
            )
            self._notify(on_step_change, FinalizationStep.ERROR, batch_id)
            raise

        now = datetime.now(timezone.utc)
        batch = FinalizationBatch(
            id=batch_id,
            created_at=now,
            updated_at=now,
            payment_ids=payment_ids,
            step=FinalizationStep.VALIDATING,
            actor_id=actor_id,
            voucher_reference=metadata.voucher_reference,
        )
        self._save_batch(batch)
        self.audit_trail.log_event(
            event_type=AuditEventType.BATCH_STARTED,
            entity_type="batch",
            entity_id=batch_id,
            metadata={"payment_ids": payment_ids, "voucher_reference": metadata.voucher_reference},
            user_id=actor_id,
            session_id=batch_id
        )

        result = FinalizationResult(success=False, batch_id=batch_id, step=batch.step)
        try:
            self._transition(batch, FinalizationStep.UNDO_CAPTURE, on_step_change)
            batch.undo_snapshot_id = self.undo_capture.snapshot(
                batch_id, list(plan.charges), payment_ids, actor_id=actor_id
            )
            result.undo_snapshot_id = batch.undo_snapshot_id

            self._transition(batch, FinalizationStep.BUDGET_UPDATE, on_step_change)
            self._update_balances(batch, plan, metadata, result)

            self._transition(batch, FinalizationStep.WHT_PROCESSING, on_step_change)
            filing = self.tax_return_log.file_batch_returns(
                batch_id, plan.payments, filed_by=actor_id,
                voucher_reference=metadata.voucher_reference
            )
            result.tax_entries = filing.entry_ids
            result.errors.extend(
                dict(f.to_dict(), payment_id=f.payment_id) for f in filing.failures
            )
            batch.tax_entry_ids = filing.entry_ids
            batch.warnings = list(result.errors)

            self._transition(batch, FinalizationStep.STATUS_UPDATE, on_step_change)
            finalized = self._update_statuses(batch, plan)

            self._transition(batch, FinalizationStep.MASTER_LOG, on_step_change)
            batch.master_log_ids = self._write_master_log(batch, plan, finalized, metadata)
            result.master_log_count = len(batch.master_log_ids)
        except Exception as exc:
            return self._fail(batch, exc, result, on_step_change)

        batch.completed_at = datetime.now(timezone.utc)
        self._transition(batch, FinalizationStep.COMPLETED, on_step_change)
        self.undo_capture.mark_completed(batch_id)
        self.audit_trail.log_event(
            event_type=AuditEventType.BATCH_COMPLETED,
            entity_type="batch",
            entity_id=batch_id,
            metadata={
                "ledger_updates": len(result.ledger_updates),
                "tax_entries": len(result.tax_entries),
                "master_log_count": result.master_log_count,
            },
            user_id=actor_id,
            session_id=batch_id
        )
        log_action(
            self.logger, "info", f"Batch finalized: {len(payment_ids)} payments",
            user_id=actor_id, action="batch_completed", correlation_id=batch_id
        )
        result.success = True
        result.step = FinalizationStep.COMPLETED
        return result

    def _validate(self, payment_ids: List[str]) -> _BatchPlan:
        if not payment_ids:
            raise ValidationError("Batch contains no payments")

        errors: List[str] = []
        not_found: Optional[AccountNotFound] = None
        seen = set()
        plan = _BatchPlan(
            payments=[], budget_lines={}, banks={}, budget_impacts={},
            reporting_impacts={}, charges={}
        )

        for payment_id in payment_ids:
            if payment_id in seen:
                errors.append(f"Payment {payment_id} appears more than once")
                continue
            seen.add(payment_id)
            payment = self.payment_store.get_payment(payment_id)
            if payment is None:
                errors.append(f"Payment {payment_id} not found")
                continue
            label = f"Payment {payment.id} ({payment.vendor or 'no vendor'})"

            if not payment.vendor:
                errors.append(f"{label}: vendor is required")
            if payment.net_payable <= 0:
                errors.append(f"{label}: net payable must be greater than zero")
            if payment.settlement_status == SettlementStatus.PAID:
                errors.append(f"{label}: already fully paid")
            if payment.is_partial and (
                payment.payment_percentage is None
                or payment.payment_percentage <= 0
                or payment.payment_percentage > 100
            ):
                errors.append(f"{label}: payment percentage must be greater than 0 and at most 100")

            try:
                budget_line = self.resolver.resolve_account(
                    payment.budget_line_id or payment.budget_line, kind=AccountKind.BUDGET_LINE
                )
                bank = None
                if payment.bank_account_id or payment.bank_account:
                    bank = self.resolver.resolve_account(
                        payment.bank_account_id or payment.bank_account, kind=AccountKind.BANK
                    )
            except AccountNotFound as exc:
                not_found = not_found or exc
                errors.append(f"{label}: {exc}")
                continue

            accounts = [budget_line] + ([bank] if bank else [])
            inactive = [a.name for a in accounts if not a.is_active]
            if inactive:
                errors.append(f"{label}: account {', '.join(inactive)} is inactive")
                continue

            try:
                impacts = [
                    self.calculator.budget_impact(
                        payment.net_payable, payment.currency, account.currency, payment.fx_rate
                    )
                    for account in accounts
                ]
                reporting_impact = self.calculator.budget_impact(
                    payment.net_payable, payment.currency,
                    self.calculator.policy.reporting_currency, payment.fx_rate
                )
            except ValidationError as exc:
                errors.append(f"{label}: {exc}")
                continue

            plan.payments.append(payment)
            plan.budget_lines[payment.id] = budget_line
            plan.budget_impacts[payment.id] = impacts[0]
            plan.reporting_impacts[payment.id] = reporting_impact
            if bank:
                plan.banks[payment.id] = bank
            for account, impact in zip(accounts, impacts):
                charge = plan.charges.setdefault(account.id, _AccountCharge(account=account))
                charge.amount += impact
                charge.payment_ids.append(payment.id)
                charge.vendors.append(payment.vendor)
                if payment.description:
                    charge.descriptions.append(payment.description)

        if errors:
            if not_found is not None:
                not_found.errors = errors
                raise not_found
            raise ValidationError(f"Batch rejected: {len(errors)} problem(s)", errors)
        return plan

    def _update_balances(self, batch: FinalizationBatch, plan: _BatchPlan,
                         metadata: BatchMetadata, result: FinalizationResult) -> None:
        """One ledger mutation per distinct account"""
        for account_id, charge in plan.charges.items():
            account = charge.account
            vendors = ", ".join(dict.fromkeys(charge.vendors))
            descriptions = "; ".join(dict.fromkeys(charge.descriptions))
            if account.is_bank:
                category = (
                    metadata.cash_flow_category
                    or self._payment_cash_flow_category(plan, charge)
                    or self.config.default_cash_flow_category
                )
            else:
                category = "Budget Spend"
            mutation = self.ledger.apply_mutation(account_id, -charge.amount, MutationMetadata(
                source=LedgerSource.PAYMENT_FINALIZATION,
                category=category,
                description=f"{vendors}: {descriptions}" if descriptions else vendors,
                reference=batch.batch_id,
                batch_id=batch.batch_id,
                actor_id=batch.actor_id,
                extra={
                    "payment_ids": charge.payment_ids,
                    "payment_count": len(charge.payment_ids),
                    "vendors": vendors,
                    "account_kind": account.kind.value,
                    "voucher_reference": metadata.voucher_reference,
                },
            ))
            result.ledger_updates.append(mutation)
            batch.ledger_updates.append(mutation.to_dict())
            self._save_batch(batch)

    @staticmethod
    def _payment_cash_flow_category(plan: _BatchPlan, charge: _AccountCharge) -> Optional[str]:
        by_id = {p.id: p for p in plan.payments}
        for payment_id in charge.payment_ids:
            category = by_id[payment_id].cash_flow_category
            if category:
                return category
        return None

    def _update_statuses(self, batch: FinalizationBatch, plan: _BatchPlan) -> List[StagedPayment]:
        finalized = []
        now = datetime.now(timezone.utc)
        for planned in plan.payments:
            payment = self.payment_store.get_payment(planned.id)
            if payment is None:
                raise ValidationError(f"Payment {planned.id} disappeared during finalization")
            if payment.payment_reference == batch.batch_id:
                finalized.append(payment)
                continue
            if payment.settlement_status == SettlementStatus.PAID:
                log_action(
                    self.logger, "warning", f"Payment {payment.id} already paid; status left unchanged",
                    action="status_skipped", resource=payment.id, correlation_id=batch.batch_id
                )
                continue

            payment.paid_amount += payment.net_payable
            total = payment.total_amount or payment.net_payable
            if payment.paid_amount >= total - self.paid_tolerance:
                payment.settlement_status = SettlementStatus.PAID
            else:
                payment.settlement_status = SettlementStatus.PARTIAL
            payment.status = PaymentStatus.FINALIZED
            payment.payment_reference = batch.batch_id
            payment.finalized_at = now
            payment.updated_at = now
            payment.budget_line_id = plan.budget_lines[payment.id].id
            if payment.id in plan.banks:
                payment.bank_account_id = plan.banks[payment.id].id
            payment.batch_history.append(batch.batch_id)
            self.payment_store.save_payment(payment)
            finalized.append(payment)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_FINALIZED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={
                    "net_payable": payment.net_payable,
                    "paid_amount": payment.paid_amount,
                    "settlement_status": payment.settlement_status.value,
                },
                user_id=batch.actor_id,
                session_id=batch.batch_id
            )
        return finalized

    def _write_master_log(self, batch: FinalizationBatch, plan: _BatchPlan,
                          finalized: List[StagedPayment], metadata: BatchMetadata) -> List[str]:
        ids = []
        now = datetime.now(timezone.utc)
        for position, payment in enumerate(finalized, start=1):
            budget_line = plan.budget_lines[payment.id]
            bank = plan.banks.get(payment.id)
            entry = MasterLogEntry(
                id=transaction_id(batch.batch_id, position),
                created_at=now,
                updated_at=now,
                batch_id=batch.batch_id,
                payment_id=payment.id,
                vendor=payment.vendor,
                invoice_no=payment.invoice_no,
                description=payment.description,
                budget_line_id=budget_line.id,
                budget_line_name=budget_line.name,
                bank_account_id=bank.id if bank else None,
                currency=payment.currency,
                fx_rate=payment.fx_rate,
                pre_tax_amount=payment.tranche_pre_tax,
                wht_amount=payment.wht_amount,
                vat_amount=payment.vat_amount,
                levy_amount=payment.levy_amount,
                fee_amount=payment.fee_amount,
                net_payable=payment.net_payable,
                subtotal=payment.tranche_pre_tax - payment.wht_amount + payment.levy_amount,
                budget_impact=plan.budget_impacts[payment.id],
                budget_impact_reporting=plan.reporting_impacts[payment.id],
                payment_percentage=payment.payment_percentage or Decimal('100'),
                paid_to_date=payment.paid_amount,
                remaining_amount=payment.remaining_amount,
                procurement_type=payment.procurement_type,
                payment_mode=payment.payment_mode,
                actor_id=batch.actor_id,
                voucher_reference=metadata.voucher_reference,
            )
            ids.append(self.master_log.append(entry))
        return ids

    def _transition(self, batch: FinalizationBatch, step: FinalizationStep,
                    on_step_change: Optional[StepCallback]) -> None:
        batch.step = step
        batch.updated_at = datetime.now(timezone.utc)
        self._save_batch(batch)
        log_action(
            self.logger, "info", f"Batch step {step.value}", user_id=batch.actor_id,
            action="batch_step", correlation_id=batch.batch_id
        )
        self._notify(on_step_change, step, batch.batch_id)

    def _notify(self, on_step_change: Optional[StepCallback], step: FinalizationStep,
                batch_id: str) -> None:
        if on_step_change is None:
            return
        try:
            on_step_change(step, batch_id)
        except Exception:
            # Progress reporting must never affect the saga
            self.logger.warning("Step callback failed for %s at %s", batch_id, step.value, exc_info=True)

    def _fail(self, batch: FinalizationBatch, exc: Exception, result: FinalizationResult,
              on_step_change: Optional[StepCallback]) -> FinalizationResult:
        failed_step = batch.step
        error = PipelineError(batch.batch_id, failed_step.value, str(exc))
        error_type = exc.code if isinstance(exc, LedgerError) else type(exc).__name__

        batch.failed_step = failed_step
        batch.error_type = error_type
        batch.error_detail = str(exc)
        batch.step = FinalizationStep.ERROR
        batch.updated_at = datetime.now(timezone.utc)
        self._save_batch(batch)

        if batch.undo_snapshot_id:
            self.undo_capture.mark_failed(batch.batch_id, failed_step.value)

        self.storage.save(FAILURES_TABLE, batch.batch_id, {
            "id": batch.batch_id,
            "batch_id": batch.batch_id,
            "failed_step": failed_step.value,
            "error_type": error_type,
            "error_detail": str(exc),
            "payment_ids": batch.payment_ids,
            "ledger_updates": batch.ledger_updates,
            "actor_id": batch.actor_id,
            "created_at": batch.updated_at.isoformat(),
        })
        self.audit_trail.log_event(
            event_type=AuditEventType.BATCH_FAILED,
            entity_type="batch",
            entity_id=batch.batch_id,
            metadata={
                "failed_step": failed_step.value,
                "error_type": error_type,
                "error_detail": str(exc),
                "ledger_updates": len(batch.ledger_updates),
            },
            user_id=batch.actor_id,
            session_id=batch.batch_id
        )
        self.logger.error(
            "Batch %s failed at %s: %s", batch.batch_id, failed_step.value, exc, exc_info=True
        )
        self._notify(on_step_change, FinalizationStep.ERROR, batch.batch_id)

        result.success = False
        result.step = FinalizationStep.ERROR
        result.failed_step = failed_step
        result.error = str(exc)
        result.errors.append(dict(error.to_dict(), step=failed_step.value, error_type=error_type))
        return result

    def _save_batch(self, batch: FinalizationBatch) -> None:
        self.storage.save(BATCHES_TABLE, batch.id, batch.to_dict())

    def get_finalization_status(self, batch_id: str) -> Optional[FinalizationBatch]:
        """Current persisted state of a batch"""
        data = self.storage.load(BATCHES_TABLE, batch_id)
        return FinalizationBatch.from_dict(data) if data else None

    def list_batches(self, step: Optional[FinalizationStep] = None) -> List[FinalizationBatch]:
        filters = {"step": step.value} if step else {}
        batches = [FinalizationBatch.from_dict(d) for d in self.storage.find(BATCHES_TABLE, filters)]
        batches.sort(key=lambda b: b.created_at, reverse=True)
        return batches

    def list_failures(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Failed batches, most recent first"""
        failures = sorted(
            self.storage.load_all(FAILURES_TABLE), key=lambda f: f['created_at'], reverse=True
        )
        return failures[:limit] if limit else failures
