"""
Manages loading, validation, and creation of INI job files.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from hlsbook.exceptions import ConfigurationError
from hlsbook.models.config import (
    AudiobookMetadata,
    EncodingConfig,
    FetchConfig,
    JobConfig,
)
from hlsbook.utils.path import is_remote, resolve_local, safe_component

log = logging.getLogger(__name__)

BOOK_SECTION = "book"
ENCODING_SECTION = "encoding"
FETCH_SECTION = "fetch"
SOURCES_SECTION = "sources"
CHAPTERS_SECTION = "chapters"

# [book] keys that are paths rather than metadata
PATH_KEYS = ("cover_art", "output", "work_dir")

# CLI option name -> (section model, field)
CLI_OVERRIDES = {
    "max_workers": ("fetch", "max_workers"),
    "item_workers": ("fetch", "item_workers"),
    "request_delay": ("fetch", "request_delay"),
    "retry_budget": ("fetch", "retry_budget"),
}


def _new_parser() -> configparser.ConfigParser:
    # URLs carry '%' escapes and source keys are case-sensitive
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str
    return parser


class ConfigManager:
    """Handles all operations related to a job's INI file."""

    def __init__(self, job_file_path: Path):
        self.job_file_path = job_file_path
        self._parser = _new_parser()

    @property
    def base_dir(self) -> Path:
        return self.job_file_path.resolve().parent

    def load_job(self, cli_options: dict[str, Any] | None = None) -> JobConfig:
        """
        Loads the job file, applies CLI overrides, and validates it.

        Args:
            cli_options: Options provided via the command line. ``None`` values
                are ignored.

        Returns:
            A validated JobConfig object.

        Raises:
            ConfigurationError: If the job file is missing, invalid, or
            validation fails.
        """
        if not self.job_file_path.is_file():
            raise ConfigurationError(
                f"Job file not found at '{self.job_file_path}'. "
                "Please run 'hlsbook init' first."
            )

        try:
            self._parser.read(self.job_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing job file: {e}") from e

        job = self._get_job_as_dict()
        for key, value in (cli_options or {}).items():
            if value is None:
                continue
            if key in CLI_OVERRIDES:
                section, field = CLI_OVERRIDES[key]
                job[section][field] = value
            elif key in ("output", "work_dir"):
                job[key] = Path(value).expanduser().resolve()
            else:
                log.debug(f"Ignoring unknown CLI option '{key}'")

        if job.get("output") is None:
            title = job["metadata"].get("title") or self.job_file_path.stem
            job["output"] = self.base_dir / f"{safe_component(title, 'audiobook')}.m4b"
        if job.get("work_dir") is None:
            output = Path(job["output"])
            job["work_dir"] = output.parent / f".{output.stem}.work"

        try:
            return JobConfig(**job)
        except ValidationError as e:
            raise ConfigurationError(f"Job file validation failed:\n{e}") from e

    def _section(self, name: str) -> dict[str, str]:
        if not self._parser.has_section(name):
            return {}
        return {k: v.strip() for k, v in self._parser.items(name)}

    def _resolve_source(self, uri: str) -> str:
        if is_remote(uri) or uri.startswith("file://"):
            return uri
        return str(resolve_local(uri, self.base_dir))

    def _get_job_as_dict(self) -> dict[str, Any]:
        """Reads every section of the INI file into JobConfig keyword arguments."""
        book = self._section(BOOK_SECTION)
        metadata = {k: v for k, v in book.items() if k not in PATH_KEYS}

        if not self._parser.has_section(SOURCES_SECTION):
            raise ConfigurationError(
                f"Job file '{self.job_file_path}' has no [{SOURCES_SECTION}] section."
            )
        # configparser keeps declaration order, which is chapter order
        sources = {
            key: self._resolve_source(uri)
            for key, uri in self._section(SOURCES_SECTION).items()
        }

        return {
            "metadata": metadata,
            "encoding": self._section(ENCODING_SECTION),
            "fetch": self._section(FETCH_SECTION),
            "sources": sources,
            "chapter_title_overrides": self._section(CHAPTERS_SECTION),
            "cover_art_path": resolve_local(book.get("cover_art"), self.base_dir),
            "output": resolve_local(book.get("output"), self.base_dir),
            "work_dir": resolve_local(book.get("work_dir"), self.base_dir),
        }

    def save_template(self, settings: dict[str, Any]) -> None:
        """
        Creates and saves a new job file, filling gaps with model defaults.

        Args:
            settings: Values to write. Recognized keys are the metadata,
                encoding and fetch field names, the path keys of [book], and
                ``sources`` / ``chapters`` mappings.
        """
        config = _new_parser()

        metadata_defaults = AudiobookMetadata()
        config[BOOK_SECTION] = {}
        for key in AudiobookMetadata.model_fields:
            value = settings.get(key, getattr(metadata_defaults, key))
            config[BOOK_SECTION][key] = str(getattr(value, "value", value))
        for key in PATH_KEYS:
            if settings.get(key):
                config[BOOK_SECTION][key] = str(settings[key])

        for section, model in ((ENCODING_SECTION, EncodingConfig), (FETCH_SECTION, FetchConfig)):
            defaults = model()
            config[section] = {}
            for key in model.model_fields:
                value = settings.get(key, getattr(defaults, key))
                if value is not None:
                    config[section][key] = str(value)

        config[SOURCES_SECTION] = dict(settings.get("sources") or {})
        config[CHAPTERS_SECTION] = dict(settings.get("chapters") or {})

        try:
            self.job_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.job_file_path, "w", encoding="utf-8") as jobfile:
                config.write(jobfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save job file: {e}") from e
