import logging
from dataclasses import dataclass
from typing import Protocol

from bluegreen.config import Settings, settings as default_settings
from bluegreen.errors import CommandError
from bluegreen.runtime import run_command

logger = logging.getLogger(__name__)


@dataclass
class ConfigTest:
    ok: bool
    output: str = ""


class ReverseProxy(Protocol):
    def test_config(self) -> ConfigTest: ...

    def reload(self) -> None: ...


class NginxProxy:
    """nginx running in a container; config files live on a shared mount."""

    def __init__(self, config: Settings = None):
        self.config = config or default_settings
        self.container = self.config.NGINX_CONTAINER

    def test_config(self) -> ConfigTest:
        try:
            result = run_command(
                ["docker", "exec", self.container, "nginx", "-t"],
                timeout=self.config.PROXY_COMMAND_TIMEOUT,
                check=False,
            )
        except CommandError as e:
            return ConfigTest(False, str(e))
        # nginx -t reports on stderr even when it succeeds
        output = (result.stderr + result.stdout).strip()
        return ConfigTest(result.returncode == 0, output)

    def reload(self) -> None:
        run_command(
            ["docker", "exec", self.container, "nginx", "-s", "reload"],
            timeout=self.config.PROXY_COMMAND_TIMEOUT,
        )
        logger.info("  nginx reloaded")
