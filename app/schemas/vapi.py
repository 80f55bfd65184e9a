from pydantic import BaseModel, ConfigDict, Field


class VapiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VapiMessage(VapiModel):
    role: str = ""
    message: str | None = ""
    time: float | None = None
    seconds_from_start: float | None = Field(default=None, alias="secondsFromStart")


class VapiArtifact(VapiModel):
    messages: list[VapiMessage] = []
    transcript: str | None = None
    recording_url: str | None = Field(default=None, alias="recordingUrl")
    stereo_recording_url: str | None = Field(default=None, alias="stereoRecordingUrl")


class VapiAnalysis(VapiModel):
    summary: str | None = None
    structured_data: dict | None = Field(default=None, alias="structuredData")
    success_evaluation: str | bool | None = Field(default=None, alias="successEvaluation")


class VapiCallResponse(VapiModel):
    id: str = ""
    status: str = ""  # queued | ringing | in-progress | forwarding | ended
    ended_reason: str | None = Field(default=None, alias="endedReason")
    started_at: str | None = Field(default=None, alias="startedAt")
    ended_at: str | None = Field(default=None, alias="endedAt")
    transcript: str | None = None
    recording_url: str | None = Field(default=None, alias="recordingUrl")
    messages: list[VapiMessage] = []
    artifact: VapiArtifact | None = None
    analysis: VapiAnalysis | None = None


class VapiWebhookCall(VapiModel):
    id: str
    status: str | None = None
    ended_reason: str | None = Field(default=None, alias="endedReason")


class VapiLegacyTranscriptMessage(VapiModel):
    role: str = ""
    message: str = ""
    time: float | None = None


class VapiLegacyWebhook(VapiModel):
    """Flat payload: {"type": "call-ended", "call": {...}, "message": {...}}."""

    type: str
    call: VapiWebhookCall | None = None
    message: VapiLegacyTranscriptMessage | None = None


class VapiServerMessage(VapiModel):
    type: str
    call: VapiWebhookCall | None = None
    status: str | None = None
    ended_reason: str | None = Field(default=None, alias="endedReason")
    role: str | None = None
    transcript: str | None = None
    transcript_type: str | None = Field(default=None, alias="transcriptType")
    recording_url: str | None = Field(default=None, alias="recordingUrl")
    artifact: VapiArtifact | None = None
    analysis: VapiAnalysis | None = None


class VapiServerWebhook(VapiModel):
    """Envelope payload: {"message": {"type": "status-update", ...}}."""

    message: VapiServerMessage
