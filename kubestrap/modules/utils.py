"""Shared helpers: retry with exponential backoff, local commands, YAML files."""
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

import yaml

from kubestrap.errors import KubestrapError

logger = logging.getLogger("kubestrap.utils")

T = TypeVar('T')


class RetryError(KubestrapError):
    """Raised when an operation still fails after every retry attempt."""

    def __init__(self, description: str, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"{description} failed after {attempts} attempt(s): {last_exception}")


@dataclass
class RetryPolicy:
    """Fixed attempt count with exponential backoff between attempts."""
    attempts: int = 3
    initial_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def delays(self) -> List[float]:
        """Delays slept between consecutive attempts."""
        return [
            min(self.initial_delay * (self.multiplier ** i), self.max_delay)
            for i in range(max(self.attempts - 1, 0))
        ]

    @classmethod
    def from_config(cls, retry_config) -> 'RetryPolicy':
        return cls(
            attempts=retry_config.attempts,
            initial_delay=retry_config.initial_delay,
            multiplier=retry_config.multiplier,
            max_delay=retry_config.max_delay,
        )


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    description: str,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    before_retry: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or the policy is exhausted.

    Args:
        func: Operation to run
        policy: Attempt count and backoff
        description: Human readable name used in logs and errors
        exceptions: Exception types that trigger a retry
        before_retry: Optional check run before each retry; returning True
            means the operation has already taken effect and ``None`` is
            returned without calling ``func`` again
        sleep: Sleep function

    Raises:
        RetryError: If every attempt failed
    """
    delays = policy.delays()
    last_exception: Optional[Exception] = None

    for attempt in range(1, policy.attempts + 1):
        try:
            return func()
        except exceptions as e:
            last_exception = e
            if attempt == policy.attempts:
                break
            wait_time = delays[attempt - 1]
            logger.warning(
                f"⚠️  {description} failed (attempt {attempt}/{policy.attempts}): {e}. "
                f"Retrying in {wait_time:.1f}s..."
            )
            sleep(wait_time)
            if before_retry is not None and before_retry():
                logger.info(f"{description} already took effect, not retrying")
                return None

    raise RetryError(description, policy.attempts, last_exception)


def run_command(
    cmd: List[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    cwd: Optional[Path] = None,
    timeout: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run a local command, logging it and its failure."""
    cmd_str = ' '.join(cmd)
    logger.debug(f"💻 Running: {cmd_str}")
    try:
        result = subprocess.run(
            cmd,
            check=check,
            text=True,
            cwd=cwd,
            env=env,
            timeout=timeout,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
        )
        if capture_output:
            logger.debug(f"🟢 Output:\n{result.stdout}")
        return result
    except subprocess.CalledProcessError as e:
        msg = f"❌ Command failed: {cmd_str} (exit code: {e.returncode})"
        if capture_output:
            msg += f"\nStdout:\n{e.stdout}\nStderr:\n{e.stderr}"
        logger.error(msg)
        raise


def read_yaml_file(path: Union[str, Path]) -> Any:
    """Read a YAML file and return its parsed contents.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"YAML file not found: {path}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {path}: {e}")
        raise
