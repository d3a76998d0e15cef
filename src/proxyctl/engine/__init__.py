"""Transactional provisioning engine."""
from __future__ import annotations

from .certificates import (
    AcquisitionResult,
    AcquisitionState,
    CertificateAcquisition,
    CertificateRenewal,
    RenewalResult,
)
from .context import RunContext
from .interfaces import CertificateAuthority, EdgeServer
from .mutator import (
    ConfigMutator,
    RedirectOutcome,
    RedirectResult,
    RestoreOutcome,
    RestoreProxyResult,
)
from .orchestrator import (
    OperationSummary,
    ProvisioningEngine,
    RollbackReport,
    RollbackState,
    SummaryStatus,
    Transaction,
    TransactionOutcome,
    TransactionStep,
)
from .supervisor import ApplyAction, ApplyError, ApplyResult, ReloadSupervisor
from .synthesizer import ConfigSynthesizer

__all__ = [
    "AcquisitionResult",
    "AcquisitionState",
    "ApplyAction",
    "ApplyError",
    "ApplyResult",
    "CertificateAcquisition",
    "CertificateAuthority",
    "CertificateRenewal",
    "ConfigMutator",
    "ConfigSynthesizer",
    "EdgeServer",
    "OperationSummary",
    "ProvisioningEngine",
    "RedirectOutcome",
    "RedirectResult",
    "ReloadSupervisor",
    "RenewalResult",
    "RestoreOutcome",
    "RestoreProxyResult",
    "RollbackReport",
    "RollbackState",
    "RunContext",
    "SummaryStatus",
    "Transaction",
    "TransactionOutcome",
    "TransactionStep",
]
