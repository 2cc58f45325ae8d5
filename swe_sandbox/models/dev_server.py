"""Data models for dev server detection and launch."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ProjectType(str, Enum):
    NEXTJS = "nextjs"
    VITE = "vite"
    CREATE_REACT_APP = "create-react-app"
    GATSBY = "gatsby"
    NUXT = "nuxt"
    REMIX = "remix"
    ASTRO = "astro"
    SVELTE = "svelte"
    ANGULAR = "angular"
    VUE = "vue"
    EXPRESS = "express"
    NESTJS = "nestjs"
    DJANGO = "django"
    FLASK = "flask"
    FASTAPI = "fastapi"
    STREAMLIT = "streamlit"
    RAILS = "rails"
    GO = "go"
    NPM = "npm"


@dataclass(frozen=True)
class DevServerConfig:
    command: str
    port: int
    project_type: ProjectType
    is_web_project: bool = True


class LaunchState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    NOT_READY_TIMEOUT = "not_ready_timeout"
    START_FAILED = "start_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            LaunchState.READY,
            LaunchState.NOT_READY_TIMEOUT,
            LaunchState.START_FAILED,
        )


@dataclass(frozen=True)
class LaunchResult:
    state: LaunchState
    port: int
    command: str
    message: str
    log_tail: str = ""
    error: Optional[str] = None

    @property
    def launched(self) -> bool:
        """True when the background command ran, ready or not."""
        return self.state in (LaunchState.READY, LaunchState.NOT_READY_TIMEOUT)


@dataclass(frozen=True)
class DevServerStatus:
    running: bool
    pid: Optional[int] = None
    recent_log: Optional[str] = None
