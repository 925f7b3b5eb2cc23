from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ChatToolName = Literal["fetchTranscript", "generateTitle", "generateImage"]

CHAT_TOOLS: tuple[ChatToolName, ...] = ("fetchTranscript", "generateTitle", "generateImage")


class ToolError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    message: str
    retryable: bool = False
    upgrade_required: bool = Field(default=False, serialization_alias="upgradeRequired")


def _default_result() -> dict[str, Any]:
    return {}


class ToolInvocation(BaseModel):
    """One tool call within a chat turn; never persisted."""

    model_config = ConfigDict(extra="forbid")

    call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=_default_result)
    result: dict[str, Any] = Field(default_factory=_default_result)
    error: ToolError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def model_output(self) -> dict[str, Any]:
        if self.error is None:
            return self.result
        output: dict[str, Any] = {"error": self.error.message}
        if self.error.upgrade_required:
            output["upgradeRequired"] = True
        return output
