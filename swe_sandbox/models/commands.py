"""Command kinds accepted for execution inside a sandbox.

Each kind carries its own schema and knows how to render itself as a single
shell command line. Free-form input is only accepted through ``ShellCommand``;
the other kinds quote every caller-supplied value before it reaches a shell.
"""

from __future__ import annotations

import shlex
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CommandBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    cwd: Optional[str] = None
    timeout_sec: Optional[int] = Field(default=None, gt=0)

    def render(self) -> str:
        raise NotImplementedError

    def environment(self) -> Optional[dict[str, str]]:
        return None


class ShellCommand(_CommandBase):
    kind: Literal["shell"] = "shell"
    command: str = Field(min_length=1)
    env: Optional[dict[str, str]] = None

    def render(self) -> str:
        return self.command

    def environment(self) -> Optional[dict[str, str]]:
        return self.env


class ReadFileCommand(_CommandBase):
    kind: Literal["read_file"] = "read_file"
    path: str = Field(min_length=1)
    missing_ok: bool = False

    def render(self) -> str:
        rendered = f"cat -- {shlex.quote(self.path)}"
        if self.missing_ok:
            return f'{rendered} 2>/dev/null || echo ""'
        return rendered


class ListFilesCommand(_CommandBase):
    kind: Literal["list_files"] = "list_files"
    path: str = "."
    max_depth: int = Field(default=2, ge=1, le=10)

    def render(self) -> str:
        return (
            f"find {shlex.quote(self.path)} -maxdepth {self.max_depth} -type f "
            "-not -path '*/node_modules/*' -not -path '*/.git/*'"
        )


SandboxCommand = Annotated[
    Union[ShellCommand, ReadFileCommand, ListFilesCommand],
    Field(discriminator="kind"),
]
