"""
Configuration loading for the fulfillment service.

Defaults live in ``config/config.yaml`` next to this module and pull secrets
from the environment through ``${oc.env:...}`` interpolation. The YAML is
merged onto a structured ``FulfillmentConfig`` schema, so typos in overrides
fail fast instead of silently creating new keys.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"


@dataclass
class PaymentSettings:
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    public_base_url: str = "https://teamseason.app"
    currency: str = "usd"
    unit_amount: int = 3900
    shipping_amount: int = 599
    product_name: str = "Team Season Photo Book"
    product_description: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key and self.webhook_secret)


@dataclass
class StorageSettings:
    bucket: Optional[str] = None
    region: str = "us-west-2"
    public_base_url: Optional[str] = None
    url_expiration: int = 7 * 24 * 60 * 60
    orders_prefix: str = "orders"
    book_data_prefix: str = "book-data"
    fetch_timeout: float = 15.0

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket)


@dataclass
class VendorSettings:
    name: str = "lulu"
    product: str = "square_hardcover_775"
    client_key: Optional[str] = None
    client_secret: Optional[str] = None
    api_base: str = "https://api.lulu.com"
    auth_url: str = "https://api.lulu.com/auth/realms/glasstree/protocol/openid-connect/token"
    pod_package_id: str = ""
    webhook_secret: Optional[str] = None
    shipping_level: str = "MAIL"
    token_safety_margin: float = 30.0
    timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.client_key and self.client_secret)


@dataclass
class RpiSettings:
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    sku: str = "7x7_softcover_lustre"
    shipping_method: str = "standard"
    timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        # the deploy template ships "..." as a placeholder key
        return bool(self.api_key and self.api_key != "..." and self.api_base)


@dataclass
class EmailSettings:
    api_key: Optional[str] = None
    from_address: str = "Team Season <books@teamseason.app>"
    shipped_subject: str = "Your Season Book Has Shipped!"
    tracking_fallback_url: str = "https://track.aftership.com/{tracking_number}"

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and not self.api_key.startswith("re_..."))


@dataclass
class OperatorSettings:
    webhook_secret: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_secret)


@dataclass
class RendererSettings:
    template_base_url: str = "http://localhost:8000/book-template"
    ready_timeout: float = 20.0
    settle_delay: float = 1.0
    chromium_args: List[str] = field(default_factory=list)


@dataclass
class FulfillmentConfig:
    log_level: str = "INFO"
    database_path: str = "data/fulfillment.db"
    max_workers: int = 2
    payments: PaymentSettings = field(default_factory=PaymentSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    vendor: VendorSettings = field(default_factory=VendorSettings)
    rpi: RpiSettings = field(default_factory=RpiSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    operator: OperatorSettings = field(default_factory=OperatorSettings)
    renderer: RendererSettings = field(default_factory=RendererSettings)
    print_specs: Dict[str, Any] = field(default_factory=dict)

    @property
    def vendor_configured(self) -> bool:
        """Whether the vendor selected by ``vendor.name`` has credentials."""
        if self.vendor.name == "rpi":
            return self.rpi.is_configured
        return self.vendor.is_configured


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """Merge schema, packaged defaults and caller overrides (in that order)."""
    schema = OmegaConf.structured(FulfillmentConfig)
    merged = OmegaConf.merge(schema, _load_default_config(), OmegaConf.create(overrides or {}))
    return merged  # type: ignore[return-value]


def load_config(overrides: Optional[Dict[str, Any]] = None) -> FulfillmentConfig:
    """Resolve environment interpolations and return a typed config object."""
    return OmegaConf.to_object(make_runtime_config(overrides))  # type: ignore[return-value]
