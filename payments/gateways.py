from dataclasses import dataclass, field

from django.conf import settings

from .exceptions import GatewayUnavailable
from .models import GatewaySetting


@dataclass(frozen=True)
class GatewayConfig:
    """Resolved configuration of one payment gateway.

    Built from a ``GatewaySetting`` row and handed explicitly to the code
    that needs it; nothing in the core reads gateway credentials from the
    environment.
    """

    name: str
    merchant_id: str = ""
    merchant_upi_id: str = ""
    merchant_name: str = ""
    salt_key: str = field(default="", repr=False)
    salt_index: str = "1"
    currency: str = "INR"
    callback_path: str = "/pg/v1/status"
    api_base_url: str = ""
    test_mode: bool = False

    @classmethod
    def from_setting(cls, setting: GatewaySetting) -> "GatewayConfig":
        return cls(
            name=setting.gateway_name,
            merchant_id=setting.merchant_id,
            merchant_upi_id=setting.merchant_upi_id,
            merchant_name=setting.merchant_name,
            salt_key=setting.salt_key,
            salt_index=setting.salt_index or "1",
            currency=setting.currency or getattr(settings, "PAYMENTS_DEFAULT_CURRENCY", "INR"),
            callback_path=setting.callback_path,
            api_base_url=(setting.api_base_url or "").rstrip("/"),
            test_mode=setting.test_mode,
        )

    def missing_payee_fields(self) -> list:
        return [name for name in ("merchant_upi_id", "merchant_name") if not getattr(self, name)]


def get_active_config(gateway_name: str) -> GatewayConfig:
    setting = GatewaySetting.objects.filter(gateway_name=gateway_name, is_active=True).first()
    if setting is None:
        raise GatewayUnavailable(f"Payment gateway '{gateway_name}' not found or inactive.", gateway=gateway_name)
    return GatewayConfig.from_setting(setting)
