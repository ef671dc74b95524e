"""
Order domain models
Status enum, transition graph and the DTOs passed between the payment,
provisioning and orchestration layers. Order records themselves stay plain
dicts, as stored.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, FrozenSet


class OrderStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    FAILED = 'failed'


TERMINAL_STATUSES: FrozenSet[str] = frozenset({OrderStatus.SUCCESS.value, OrderStatus.FAILED.value})

# A still-settling gateway event may send a processing order back to pending;
# nothing leaves a terminal state.
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    OrderStatus.PENDING.value: frozenset({'pending', 'processing', 'failed'}),
    OrderStatus.PROCESSING.value: frozenset({'pending', 'processing', 'success', 'failed'}),
    OrderStatus.SUCCESS.value: frozenset(),
    OrderStatus.FAILED.value: frozenset(),
}


def status_value(status: Any) -> str:
    return status.value if isinstance(status, OrderStatus) else str(status)


def is_terminal(status: Any) -> bool:
    return status_value(status) in TERMINAL_STATUSES


def can_transition(current: Any, new: Any) -> bool:
    """Check an edge of the order lifecycle graph"""
    return status_value(new) in ALLOWED_TRANSITIONS.get(status_value(current), frozenset())


def derive_contact(owner_name: str) -> str:
    """Panel account e-mail is a projection of the customer name"""
    return f"{owner_name}@gmail.com"


@dataclass(frozen=True)
class ResourceTier:
    memory: int
    disk: int
    cpu: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class PackageSpec:
    """Catalog entry; a copy is embedded in each order for display stability"""
    id: str
    name: str
    memory: int
    disk: int
    cpu: int
    price: int

    @property
    def tier(self) -> ResourceTier:
        return ResourceTier(memory=self.memory, disk=self.disk, cpu=self.cpu)

    def details(self) -> Dict[str, Any]:
        return {
            'memory': self.memory,
            'disk': self.disk,
            'cpu': self.cpu,
            'ram': f"{self.memory // 1024}GB",
            'disk_display': f"{self.disk // 1024}GB",
            'cpu_display': f"{self.cpu}%",
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'ram': f"{self.memory // 1024}GB",
            'disk': f"{self.disk // 1024}GB",
            'cpu': f"{self.cpu}%",
            'memory_mb': self.memory,
            'disk_mb': self.disk,
            'cpu_percent': self.cpu,
            'price': self.price,
        }


@dataclass
class DepositResult:
    """What the payment layer hands back after opening a deposit"""
    order_id: str
    amount: int
    qr_url: Optional[str]
    qr_string: Optional[str]
    expires_at: str
    payment_reference: Optional[str] = None
    order_data: Dict[str, Any] = field(default_factory=dict)
    warning: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.warning is not None


@dataclass
class ProvisionResult:
    provisioned_resource: Dict[str, Any]
    panel_user_id: Optional[int] = None


@dataclass
class DepositEventDTO:
    """Normalized inbound gateway callback"""
    event: str
    reff_id: Optional[str]
    status: str
    deposit_id: Optional[str] = None
    nominal: Optional[int] = None
    fee: Optional[int] = None
    paid_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_deposit(self) -> bool:
        return self.event == 'deposit'
