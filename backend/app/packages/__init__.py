"""Package catalog and user entitlement lifecycle."""

from .catalog import DEFAULT_CATALOG, PackageDefinition, default_packages, generate_gift_code, package_period_label
from .exceptions import (
    ConcurrentActivationError,
    ExternalServiceError,
    InvalidPackageStateError,
    PackageError,
    PackageNotFoundError,
)
from .models import (
    NO_PACKAGE,
    ActivationOutcome,
    ActivePackageView,
    Currency,
    ExpiryAnomaly,
    ExpiryCheckResult,
    ExpirySweepReport,
    GiftCard,
    GiftCardApplication,
    GiftCardDeduction,
    Package,
    PackageSnapshot,
    PackageType,
    PaymentMethod,
    PaymentStatus,
    PaymentVerification,
    PrescriptionResult,
    ProvisioningResult,
    RenewalEligibilityView,
    RenewalHistoryEntry,
    RenewalHistoryView,
    RenewalRefreshSummary,
    RenewalResult,
    UserAccount,
    UserPackage,
    UserPackageListing,
)
from .provisioning import GIFT_CARD_PURCHASE_TYPE, ProvisioningService
from .service import (
    GiftCardStore,
    PackageNotifier,
    PackageRepository,
    PackageService,
    PaymentVerifier,
    PrescriptionGenerator,
)

__all__ = [
    "ActivationOutcome",
    "ActivePackageView",
    "ConcurrentActivationError",
    "Currency",
    "DEFAULT_CATALOG",
    "ExpiryAnomaly",
    "ExpiryCheckResult",
    "ExpirySweepReport",
    "ExternalServiceError",
    "GIFT_CARD_PURCHASE_TYPE",
    "GiftCard",
    "GiftCardApplication",
    "GiftCardDeduction",
    "GiftCardStore",
    "InvalidPackageStateError",
    "NO_PACKAGE",
    "Package",
    "PackageDefinition",
    "PackageError",
    "PackageNotFoundError",
    "PackageNotifier",
    "PackageRepository",
    "PackageService",
    "PackageSnapshot",
    "PackageType",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentVerification",
    "PaymentVerifier",
    "PrescriptionGenerator",
    "PrescriptionResult",
    "ProvisioningResult",
    "ProvisioningService",
    "RenewalEligibilityView",
    "RenewalHistoryEntry",
    "RenewalHistoryView",
    "RenewalRefreshSummary",
    "RenewalResult",
    "UserAccount",
    "UserPackage",
    "UserPackageListing",
    "default_packages",
    "generate_gift_code",
    "package_period_label",
]
