"""Wire models for the viewer push channel"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mdpreview.core.models import OutputFormat, RenderOutput


class PatchKind(str, Enum):
    full   = "full"
    blocks = "blocks"
    banner = "banner"


class PatchEvent(BaseModel):
    """One push-channel message; serialized with camelCase aliases."""
    model_config = ConfigDict(populate_by_name=True)

    document_version: int = Field(..., alias="documentVersion")
    patch_kind: PatchKind = Field(..., alias="patchKind")
    format: OutputFormat = OutputFormat.html
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(by_alias=True)}\n\n"


def full_event(output: RenderOutput) -> PatchEvent:
    return PatchEvent(
        document_version=output.document_version,
        patch_kind=PatchKind.full,
        format=output.format,
        payload={"blocks": list(output.blocks), "theme": output.theme},
    )


def blocks_event(output: RenderOutput, ops: list[dict]) -> PatchEvent:
    return PatchEvent(
        document_version=output.document_version,
        patch_kind=PatchKind.blocks,
        format=output.format,
        payload={"ops": ops},
    )


def banner_event(version: int, message: str, fmt: OutputFormat = OutputFormat.html) -> PatchEvent:
    return PatchEvent(
        document_version=version,
        patch_kind=PatchKind.banner,
        format=fmt,
        payload={"message": message},
    )
