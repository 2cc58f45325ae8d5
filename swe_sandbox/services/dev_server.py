"""Dev server detection from project files and readiness parsing of its log."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from typing import Iterable, Optional

from swe_sandbox.models.dev_server import DevServerConfig, ProjectType

logger = logging.getLogger(__name__)

PROJECT_CONFIGS: dict[str, DevServerConfig] = {
    "nextjs": DevServerConfig("npm run dev", 3000, ProjectType.NEXTJS),
    "vite": DevServerConfig("npm run dev", 5173, ProjectType.VITE),
    "cra": DevServerConfig("npm start", 3000, ProjectType.CREATE_REACT_APP),
    "gatsby": DevServerConfig("npm run develop", 8000, ProjectType.GATSBY),
    "nuxt": DevServerConfig("npm run dev", 3000, ProjectType.NUXT),
    "remix": DevServerConfig("npm run dev", 3000, ProjectType.REMIX),
    "astro": DevServerConfig("npm run dev", 4321, ProjectType.ASTRO),
    "svelte": DevServerConfig("npm run dev", 5173, ProjectType.SVELTE),
    "angular": DevServerConfig("npm start", 4200, ProjectType.ANGULAR),
    "vue": DevServerConfig("npm run dev", 5173, ProjectType.VUE),
    "express": DevServerConfig("npm run dev", 3000, ProjectType.EXPRESS),
    "nest": DevServerConfig("npm run start:dev", 3000, ProjectType.NESTJS),
    "django": DevServerConfig("python manage.py runserver 0.0.0.0:8000", 8000, ProjectType.DJANGO),
    "flask": DevServerConfig("flask run --host=0.0.0.0", 5000, ProjectType.FLASK),
    "fastapi": DevServerConfig("uvicorn main:app --reload --host 0.0.0.0", 8000, ProjectType.FASTAPI),
    "streamlit": DevServerConfig("streamlit run app.py", 8501, ProjectType.STREAMLIT),
    "rails": DevServerConfig("rails server -b 0.0.0.0", 3000, ProjectType.RAILS),
    "go": DevServerConfig("go run .", 8080, ProjectType.GO),
    "generic_npm_dev": DevServerConfig("npm run dev", 3000, ProjectType.NPM),
    "generic_npm_start": DevServerConfig("npm start", 3000, ProjectType.NPM),
}

# Checked in order; the first dependency present wins.
FRAMEWORK_DEPENDENCIES = (
    ("next", "nextjs"),
    ("vite", "vite"),
    ("react-scripts", "cra"),
    ("gatsby", "gatsby"),
    ("nuxt", "nuxt"),
    ("@remix-run/dev", "remix"),
    ("astro", "astro"),
    ("svelte", "svelte"),
    ("@angular/core", "angular"),
    ("vue", "vue"),
    ("@nestjs/core", "nest"),
    ("express", "express"),
)

DEFAULT_NPM_PORT = 3000

_SCRIPT_PORT_RE = re.compile(r"(?:PORT|port)[=:\s]+(\d+)")

_PORT_PATTERNS = (
    re.compile(
        r"(?:listening|running|started|ready)\s+(?:on|at)\s+(?:http://)?"
        r"(?:localhost|127\.0\.0\.1|0\.0\.0\.0):(\d+)",
        re.IGNORECASE,
    ),
    re.compile(r"Local:\s+http://(?:localhost|127\.0\.0\.1):(\d+)", re.IGNORECASE),
    re.compile(r"port\s+(\d+)", re.IGNORECASE),
    re.compile(r":(\d{4,5})\s*$", re.MULTILINE),
    re.compile(r"http://\S+:(\d+)", re.IGNORECASE),
)

_SUCCESS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ready",
        r"listening",
        r"started",
        r"running",
        r"compiled",
        r"server\s+is\s+running",
        r"local:",
        r"webpack.*compiled",
        r"vite.*ready",
    )
)

_ERROR_MARKERS = ("Error:", "EADDRINUSE", "error")


def _script_port(script: str) -> int:
    match = _SCRIPT_PORT_RE.search(script)
    return int(match.group(1)) if match else DEFAULT_NPM_PORT


def detect_from_package_json(content: str) -> Optional[DevServerConfig]:
    try:
        package = json.loads(content)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning("Failed to parse package.json: %s", exc)
        return None
    if not isinstance(package, dict):
        logger.warning("package.json is not an object")
        return None

    deps: dict = {}
    for section in ("dependencies", "devDependencies"):
        value = package.get(section)
        if isinstance(value, dict):
            deps.update(value)
    scripts = package.get("scripts")
    if not isinstance(scripts, dict):
        scripts = {}

    for dependency, key in FRAMEWORK_DEPENDENCIES:
        if deps.get(dependency):
            return PROJECT_CONFIGS[key]

    for script_name, key in (("dev", "generic_npm_dev"), ("start", "generic_npm_start")):
        script = scripts.get(script_name)
        if script:
            return replace(PROJECT_CONFIGS[key], port=_script_port(str(script)))
    return None


def detect_python_project(files: Iterable[str]) -> Optional[DevServerConfig]:
    files = list(files)
    names = {name.lower() for name in files}
    if "manage.py" in names:
        return PROJECT_CONFIGS["django"]
    # main.py plus a dependency manifest is taken to be FastAPI without reading it.
    if "main.py" in names and ("requirements.txt" in names or "pyproject.toml" in names):
        return PROJECT_CONFIGS["fastapi"]
    if "app.py" in names or "wsgi.py" in names:
        return PROJECT_CONFIGS["flask"]
    if any("streamlit" in name for name in files):
        return PROJECT_CONFIGS["streamlit"]
    return None


def detect_rails_project(files: Iterable[str]) -> Optional[DevServerConfig]:
    names = {name.lower() for name in files}
    if "config/routes.rb" in names or "gemfile" in names:
        return PROJECT_CONFIGS["rails"]
    return None


def detect_go_project(files: Iterable[str]) -> Optional[DevServerConfig]:
    if "go.mod" in {name.lower() for name in files}:
        return PROJECT_CONFIGS["go"]
    return None


def split_file_listing(listing: str) -> list[str]:
    files = []
    for line in listing.splitlines():
        line = line.strip()
        if line.startswith("./"):
            line = line[2:]
        if line:
            files.append(line)
    return files


def detect_dev_server(
    files: Iterable[str] | str,
    package_json_content: Optional[str] = None,
) -> Optional[DevServerConfig]:
    """Pick a dev server configuration for a project.

    ``files`` is either a sequence of repository-relative paths or a newline
    separated listing. Detection order: package.json content, package.json
    presence, Python markers, Rails markers, Go marker.
    """
    if isinstance(files, str):
        paths = split_file_listing(files)
    else:
        paths = [path.strip() for path in files if path and path.strip()]

    if package_json_content:
        config = detect_from_package_json(package_json_content)
        if config is not None:
            logger.info(
                "Detected dev server from package.json: %s (%s on port %s)",
                config.project_type.value,
                config.command,
                config.port,
            )
            return config

    has_package_json = any(p == "package.json" or p.endswith("/package.json") for p in paths)
    if has_package_json and not package_json_content:
        logger.info("Found package.json but content not available, using generic npm config")
        return PROJECT_CONFIGS["generic_npm_dev"]

    for label, detector in (
        ("Python", detect_python_project),
        ("Rails", detect_rails_project),
        ("Go", detect_go_project),
    ):
        config = detector(paths)
        if config is not None:
            logger.info(
                "Detected %s dev server: %s (%s on port %s)",
                label,
                config.project_type.value,
                config.command,
                config.port,
            )
            return config

    logger.info("No dev server detected for this project")
    return None


def parse_port_from_output(output: str) -> Optional[int]:
    for pattern in _PORT_PATTERNS:
        match = pattern.search(output)
        if match:
            port = int(match.group(1))
            if 0 < port < 65536:
                return port
    return None


def is_server_started(output: str) -> bool:
    return any(pattern.search(output) for pattern in _SUCCESS_PATTERNS)


def has_error_output(output: str) -> bool:
    return any(marker in output for marker in _ERROR_MARKERS)


def evaluate_readiness(output: str, expected_port: int) -> Optional[int]:
    """Return the port the server is serving on, or None to keep waiting.

    Error output only counts as ready when it also names a port.
    """
    if not output:
        return None
    parsed = parse_port_from_output(output)
    if is_server_started(output):
        return parsed or expected_port
    if has_error_output(output) and parsed:
        return parsed
    return None
