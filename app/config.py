from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    vapi_api_key: str = ""
    vapi_phone_number_id: str = ""
    vapi_base_url: str = "https://api.vapi.ai"
    webhook_base_url: str = ""
    default_phone_region: str = "US"
    start_call_timeout_seconds: float = 10.0
    reconcile_max_attempts: int = 8
    reconcile_delay_seconds: float = 2.5
    fatal_ended_reasons: list[str] = []
    last_resort_staff_id: str = "sarah"
    agents_file: str = ""
    log_level: str = "INFO"

    @property
    def calling_configured(self) -> bool:
        return bool(self.vapi_api_key and self.vapi_phone_number_id)
