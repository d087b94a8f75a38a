"""Utility functions for the installer."""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, TypeVar, Union

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, TemplateSyntaxError, UndefinedError
from tenacity import RetryCallState, RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..errors import ConfigurationError, NetworkError
from ..host.files import read_text, write_text_file

logger = logging.getLogger("gpuctl.installer.utils")

T = TypeVar('T')

TEMPLATE_DIR = Path(__file__).parent / 'templates'


def poll(
    check: Callable[[], T],
    attempts: int,
    interval: float,
    description: str,
    accept: Callable[[T], bool] = bool,
) -> T:
    """Call ``check`` until its result is accepted, sleeping a fixed interval between tries.

    Args:
        check: Zero-argument probe
        attempts: Maximum number of calls
        interval: Seconds to wait between calls
        description: What is being waited for (used in logs and errors)
        accept: Predicate deciding whether a result ends the wait

    Returns:
        The first accepted result

    Raises:
        NetworkError: If no accepted result was seen after all attempts
    """
    def _log_wait(retry_state: RetryCallState) -> None:
        logger.info(f"⏳ Waiting for {description}... ({retry_state.attempt_number}/{attempts})")

    retryer = Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda result: not accept(result)),
        before_sleep=_log_wait,
    )
    try:
        return retryer(check)
    except RetryError as e:
        raise NetworkError(f"{description} not available after {attempts} attempts") from e


def write_yaml_file(path: Union[str, Path], data: Dict[str, Any], dry_run: bool = False) -> bool:
    """Write a YAML file with the given data.

    Returns:
        bool: True if the content changed
    """
    content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return write_text_file(path, content, dry_run=dry_run)


def read_yaml_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML file and return its contents as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"YAML file not found: {path}")
    try:
        return yaml.safe_load(read_text(path)) or {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {path}: {e}")
        raise


def render_template(name: str, **context: Any) -> str:
    """Render one of the bundled Jinja2 templates.

    Raises:
        ConfigurationError: If the template is missing, malformed or references an undefined variable
    """
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    try:
        return env.get_template(name).render(**context)
    except TemplateNotFound as e:
        raise ConfigurationError(f"Template not found: {e}") from e
    except TemplateSyntaxError as e:
        raise ConfigurationError(f"Template syntax error in {name}: {e}") from e
    except UndefinedError as e:
        raise ConfigurationError(f"Missing required template variable in {name}: {e}") from e
