from abc import ABC, abstractmethod
from typing import Any, Dict
import os
import uuid

import httpx
from loguru import logger

TILOPAY_LOGIN_URL = os.environ.get(
    "TILOPAY_LOGIN_URL",
    "https://app.tilopay.com/api/v1/loginSdk"
)
TILOPAY_API_USER = os.environ.get("TILOPAY_API_USER", "")
TILOPAY_API_PASSWORD = os.environ.get("TILOPAY_API_PASSWORD", "")
TILOPAY_API_KEY = os.environ.get("TILOPAY_API_KEY", "")


class PaymentBridgeError(Exception):
    pass


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    """
    Server side half of the card payment SDK: trade long lived API
    credentials for a short lived token the browser SDK initialises with.
    """

    @abstractmethod
    async def sdk_token(self, http: httpx.AsyncClient) -> Dict[str, Any]: ...


# ----------------------------
# TiloPay implementation
# ----------------------------
class TiloPay(PaymentAdapter):

    def __init__(self, api_user: str, password: str, key: str,
                 login_url: str = TILOPAY_LOGIN_URL) -> None:
        self.api_user = api_user
        self.password = password
        self.key = key
        self.login_url = login_url

    async def sdk_token(self, http: httpx.AsyncClient) -> Dict[str, Any]:
        try:
            r = await http.post(
                self.login_url,
                json={
                    "apiuser": self.api_user,
                    "password": self.password,
                    "key": self.key,
                },
            )
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PaymentBridgeError(f"loginSdk failed: {e!r}") from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise PaymentBridgeError("loginSdk returned no access_token")
        logger.debug("TiloPay SDK token issued")
        return data


# ----------------------------
# MockTiloPay for dev/tests
# ----------------------------
class MockTiloPay(PaymentAdapter):

    async def sdk_token(self, http: httpx.AsyncClient) -> Dict[str, Any]:
        return {
            "access_token": f"mock_{uuid.uuid4().hex}",
            "token_type": "bearer",
            "expires_in": 3600,
        }


def new_adapter() -> PaymentAdapter:
    backend = os.environ.get(
        "PAYMENT_BACKEND",
        "tilopay" if TILOPAY_API_USER else "mock",
    ).lower()
    if backend == "tilopay":
        return TiloPay(TILOPAY_API_USER, TILOPAY_API_PASSWORD,
                       TILOPAY_API_KEY)
    return MockTiloPay()
