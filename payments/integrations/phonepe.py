import json

import requests
from django.conf import settings
from requests import RequestException

from ..exceptions import GatewayError
from ..gateways import GatewayConfig
from ..utils import x_verify

STATUS_PATH = "/pg/v1/status/{merchant_id}/{transaction_ref}"


def _timeout() -> float:
    return float(getattr(settings, "PAYMENTS_GATEWAY_TIMEOUT", 30))


def _headers(config: GatewayConfig, path: str) -> dict:
    return {
        "Content-Type": "application/json",
        "X-VERIFY": x_verify(path, config.salt_key, config.salt_index),
        "X-MERCHANT-ID": config.merchant_id,
    }


def fetch_payment_status(config: GatewayConfig, transaction_ref: str) -> dict:
    """Ask the gateway how a payment ended. Returns the decoded status document.

    The document has the same shape as a decoded webhook body, so it can be
    fed to ``payments.webhook.outcome_from_document``.
    """
    if not config.api_base_url:
        raise GatewayError(f"Missing api_base_url for gateway '{config.name}'")
    if not config.merchant_id or not config.salt_key:
        raise GatewayError(f"Missing merchant_id or salt_key for gateway '{config.name}'")

    path = STATUS_PATH.format(merchant_id=config.merchant_id, transaction_ref=transaction_ref)
    url = f"{config.api_base_url}{path}"
    try:
        resp = requests.get(url, headers=_headers(config, path), timeout=_timeout())
    except RequestException as e:
        raise GatewayError(f"Gateway request failed: {e}")
    try:
        data = resp.json()
    except ValueError:
        data = {"raw": resp.text}
    if resp.status_code == 200:
        return data
    if resp.status_code == 401:
        hint = "Check X-VERIFY checksum (salt key / salt index)."
    elif resp.status_code == 400:
        hint = "Bad request: merchant id or transaction reference."
    elif resp.status_code in (404, 500):
        hint = f"Gateway error {resp.status_code}."
    else:
        hint = f"HTTP {resp.status_code}"
    raise GatewayError(f"Status check failed: {hint}. Response: {json.dumps(data)[:800]}")
