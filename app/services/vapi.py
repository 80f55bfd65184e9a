import logging

import httpx

from app.exceptions.custom import RateLimitError, VapiError
from app.schemas.vapi import VapiCallResponse

logger = logging.getLogger(__name__)

VAPI_BASE_URL = "https://api.vapi.ai"


class VapiService:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        phone_number_id: str,
        base_url: str = VAPI_BASE_URL,
        webhook_base_url: str = "",
        start_timeout: float = 10.0,
    ):
        self._client = client
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._phone_number_id = phone_number_id
        self._base_url = base_url.rstrip("/")
        self._webhook_base_url = webhook_base_url.rstrip("/")
        self._start_timeout = start_timeout

    @property
    def call_url(self) -> str:
        return f"{self._base_url}/call"

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise RateLimitError("VAPI")
        if resp.status_code >= 400:
            raise VapiError(resp.text, status_code=resp.status_code)

    async def start_call(
        self,
        assistant_id: str,
        customer_number: str,
        variable_values: dict | None = None,
    ) -> VapiCallResponse:
        payload: dict = {
            "assistantId": assistant_id,
            "phoneNumberId": self._phone_number_id,
            "customer": {"number": customer_number},
        }
        if variable_values:
            payload["assistantOverrides"] = {"variableValues": variable_values}
        if self._webhook_base_url:
            payload["serverUrl"] = f"{self._webhook_base_url}/calls/webhook"

        logger.info("Starting outbound call to %s", customer_number)
        resp = await self._client.post(
            self.call_url,
            json=payload,
            headers=self._headers,
            timeout=self._start_timeout,
        )
        self._raise_for_status(resp)

        call = VapiCallResponse.model_validate(resp.json())
        if not call.id:
            raise VapiError("Call start response has no call id", status_code=resp.status_code)
        logger.info("Outbound call started: call_id=%s status=%s", call.id, call.status)
        return call

    async def get_call(self, call_id: str) -> VapiCallResponse:
        resp = await self._client.get(f"{self.call_url}/{call_id}", headers=self._headers)
        self._raise_for_status(resp)
        return VapiCallResponse.model_validate(resp.json())

    async def end_call(self, call_id: str) -> bool:
        resp = await self._client.delete(f"{self.call_url}/{call_id}", headers=self._headers)
        if resp.status_code >= 400:
            logger.warning(
                "End call %s rejected by VAPI (status=%s): %s",
                call_id, resp.status_code, resp.text,
            )
            return False
        return True
