from __future__ import annotations

from typing import Dict, List

# Files that describe how a scraper is built. These are staged into the image
# before the compile step; everything else goes in afterwards.
ALL_CONFIG_FILENAMES: List[str] = [
    "Procfile",
    "Gemfile",
    "Gemfile.lock",
    "requirements.txt",
    "runtime.txt",
    "composer.json",
    "composer.lock",
    "app.psgi",
    "cpanfile",
]

BUILDSTEP_IMAGE = "openaustralia/buildstep"
DEFAULT_PLATFORM = "latest"
PLATFORM_FILENAME = "platform"

APP_DIR = "/app"
DATABASE_FILENAME = "data.sqlite"
TIME_OUTPUT_FILENAME = "time.output"
CONTAINER_DATABASE_PATH = f"{APP_DIR}/{DATABASE_FILENAME}"
CONTAINER_TIME_OUTPUT_PATH = f"{APP_DIR}/{TIME_OUTPUT_FILENAME}"

SCRAPER_USER = "scraper"
START_COMMAND = "/start scraper"

# Relative weight, not a hard cap. 1024 is the engine default.
CPU_SHARES = 307
# On a 1G host this allows ten scrapers side by side.
MEMORY_LIMIT_BYTES = 100 * 1024 * 1024

# Exit status reported when the compile stage never produced an image.
COMPILE_FAILED_STATUS = 255

CONTAINER_GRACE_SECONDS = 5 * 60

DEFAULT_CONFIG: Dict[str, object] = {
    "docker_base_url": "unix:///var/run/docker.sock",
    "docker_timeout_seconds": 120,
    "interactive_timeout_seconds": 4 * 60 * 60,
    "build_image": BUILDSTEP_IMAGE,
    "repo_root": "db/scrapers/repos",
    "data_root": "db/scrapers/data",
    "container_grace_seconds": CONTAINER_GRACE_SECONDS,
    "janitor_interval_seconds": 60,
    "max_attempts": 3,
}
