class VapiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(Exception):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Rate limit exceeded for {service}")


class InvalidPhoneNumberError(ValueError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CallNotEndedError(Exception):
    def __init__(self, call_id: str, status: str):
        self.call_id = call_id
        self.status = status
        super().__init__(f"Call {call_id} has not ended yet (status={status})")
