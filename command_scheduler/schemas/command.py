from typing import Optional
from pydantic import BaseModel, Field


class CommandResult(BaseModel):
    """Outcome of one command invocation, as reported by an executor."""
    success: bool = Field(..., description="Whether the command succeeded")
    output: Optional[str] = Field(None, description="Output produced by the command")
    error: Optional[str] = Field(None, description="Error message when the command failed")

    @classmethod
    def ok(cls, output: Optional[str] = None) -> "CommandResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, output: Optional[str] = None) -> "CommandResult":
        return cls(success=False, output=output, error=error)
