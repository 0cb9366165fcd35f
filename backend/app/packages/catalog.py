"""Static catalog definitions used to seed and describe packages."""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .models import Package, PackageType

GIFT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class PackageDefinition:
    """Describes a package tier offered by default."""

    package_type: PackageType
    name: str
    price: float
    duration_days: int
    description: str
    features: Tuple[str, ...]
    max_prescriptions: int = 0

    def to_package(self) -> Package:
        return Package(
            package_id=f"pkg_{self.package_type.value}",
            name=self.name,
            package_type=self.package_type,
            price=self.price,
            duration_days=self.duration_days,
            description=self.description,
            features=self.features,
            max_prescriptions=self.max_prescriptions,
        )


DEFAULT_CATALOG: Dict[PackageType, PackageDefinition] = {
    PackageType.SINGLE: PackageDefinition(
        package_type=PackageType.SINGLE,
        name="Single Session",
        price=15,
        duration_days=3,
        description="Perfect for trying out our service with a single healing session.",
        features=("Two Sonic Prescriptions", "3-day access", "Basic Support"),
        max_prescriptions=2,
    ),
    PackageType.BASIC: PackageDefinition(
        package_type=PackageType.BASIC,
        name="Basic Plan",
        price=25,
        duration_days=15,
        description="Foundational healing with key sonic prescriptions for common needs.",
        features=(
            "Sleep, Detox, Immunity Sonic Prescriptions",
            "+1 Add-on Sonic Prescription",
            "15-Day Access",
            "Basic Support",
        ),
        max_prescriptions=4,
    ),
    PackageType.ENHANCED: PackageDefinition(
        package_type=PackageType.ENHANCED,
        name="Enhanced Plan",
        price=45,
        duration_days=30,
        description="Comprehensive healing approach with expanded prescription options.",
        features=("Sleep, Detox, Immunity", "+3 Add-on Prescriptions", "30-Day Access", "Basic Support"),
        max_prescriptions=7,
    ),
    PackageType.PREMIUM: PackageDefinition(
        package_type=PackageType.PREMIUM,
        name="Premium Plan",
        price=75,
        duration_days=30,
        description="Our most comprehensive offering with full access to all healing technologies.",
        features=(
            "Complete Sonic Prescriptions Library",
            "30-Day Access",
            "Priority Support",
            "Custom Healing Programs",
        ),
    ),
}


def default_packages() -> List[Package]:
    """Return catalog rows for every default package tier."""

    return [definition.to_package() for definition in DEFAULT_CATALOG.values()]


def package_period_label(package: Package) -> str:
    """Human readable billing period shown next to renewal options."""

    if package.package_type == PackageType.SINGLE:
        return "one-time payment"
    if package.duration_days <= 7:
        return "weekly"
    if package.duration_days <= 15:
        return "for 15 days"
    if package.duration_days <= 31:
        return "per month"
    if package.duration_days <= 90:
        return "per quarter"
    return "per year"


def generate_gift_code() -> str:
    """Return an ``XXXX-XXXX`` code drawn from an alphabet without look-alike characters."""

    raw = "".join(secrets.choice(GIFT_CODE_ALPHABET) for _ in range(8))
    return f"{raw[:4]}-{raw[4:]}"
