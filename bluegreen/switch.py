"""Atomic traffic switch: point, validate, reload, revert on any failure."""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Set

from bluegreen.config import Settings
from bluegreen.errors import CommandError, SwitchError, SwitchRevertedError
from bluegreen.locks import reload_lock
from bluegreen.models import Color, ServiceTopology
from bluegreen.nginx import ConfigSynthesizer, ProxyLayout
from bluegreen.proxy import ConfigTest, ReverseProxy
from bluegreen.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

# nginx -t failures that cannot be attributed to a single file
CRITICAL_PATTERNS = (
    re.compile(r"duplicate upstream", re.I),
    re.compile(r"no servers are inside upstream", re.I),
    re.compile(r"syntax error", re.I),
)


def _names_file(output: str, name: str) -> bool:
    # api.shop.example.com.conf must not count as shop.example.com.conf
    return re.search(rf"(?<![\w.\-]){re.escape(name)}(?![\w\-]|\.\w)", output) is not None


@dataclass
class SwitchResult:
    domain: str
    previous: Optional[Color]
    current: Color


def failure_is_ours(test: ConfigTest, own_files) -> bool:
    """Decide whether a failed `nginx -t` should block this domain's switch.

    Errors that name one of this domain's files block it, as do a few
    errors nginx cannot pin on a file. Anything else belongs to another
    service's config and is only logged.
    """
    output = test.output or ""
    if any(_names_file(output, name) for name in own_files):
        return True
    if any(p.search(output) for p in CRITICAL_PATTERNS):
        return True
    if "[emerg]" not in output and "[error]" not in output:
        # Unparseable failure: cannot prove it is someone else's
        return True
    return False


class ProxySwitch:
    def __init__(self, layout: ProxyLayout, synthesizer: ConfigSynthesizer, proxy: ReverseProxy,
                 runtime: ContainerRuntime, config: Settings):
        self.layout = layout
        self.synthesizer = synthesizer
        self.proxy = proxy
        self.runtime = runtime
        self.config = config

    def live_containers(self) -> Set[str]:
        return {c.name for c in self.runtime.list_containers() if c.running}

    def _validate(self, domain: str) -> ConfigTest:
        test = self.proxy.test_config()
        if test.ok:
            return test
        if failure_is_ours(test, self.layout.document_names(domain)):
            return test
        logger.warning(f"  nginx -t reports errors in other services' configs, not {domain}:")
        for line in test.output.splitlines()[-5:]:
            logger.warning(f"    {line}")
        return ConfigTest(True, test.output)

    def _revert(self, domain: str, snapshot, reload: bool) -> bool:
        """Restore the pointer; with reload=True also re-activate it. Returns reload success."""
        self.layout.restore(domain, snapshot)
        logger.warning(f"  Pointer for {domain} reverted")
        if not reload:
            return True
        try:
            self.proxy.reload()
            return True
        except CommandError as e:
            logger.critical(f"  Second reload after revert failed for {domain}: {e}")
            return False

    def switch(self, topology: ServiceTopology, color: Color, live: Set[str] = None) -> SwitchResult:
        color = Color(color)
        domain = topology.domain
        if live is None:
            live = self.live_containers()

        # Render outside the reload lock
        self.synthesizer.ensure_documents(topology, color, live)

        with reload_lock(self.layout.conf_dir):
            self.layout.fix_broken_symlinks()
            snapshot = self.layout.snapshot(domain)
            previous = self.layout.current_color(domain)

            self.layout.point(domain, color)

            test = self._validate(domain)
            if not test.ok:
                self._revert(domain, snapshot, reload=False)
                logger.error(f"  nginx -t failed for {domain} -> {color.value}:")
                for line in test.output.splitlines()[-10:]:
                    logger.error(f"    {line}")
                raise SwitchRevertedError(
                    f"nginx config test failed switching {domain} to {color.value}; pointer reverted",
                    previous=previous,
                    target=color,
                )

            try:
                self.proxy.reload()
            except CommandError as e:
                logger.error(f"  nginx reload failed for {domain}: {e}")
                reloaded = self._revert(domain, snapshot, reload=True)
                raise SwitchRevertedError(
                    f"nginx reload failed switching {domain} to {color.value}; pointer reverted"
                    + ("" if reloaded else " but the second reload also failed"),
                    previous=previous,
                    target=color,
                    reloaded=reloaded,
                )

        logger.info(f"  Traffic for {domain} now on {color.value}")
        return SwitchResult(domain, previous, color)

    def refresh(self, topology: ServiceTopology, color: Color, live: Set[str] = None) -> None:
        """Re-render the live document from current containers and reload.

        Used after cleanup so the config stops listing a stopped color.
        The previous document is restored if the new one does not load.
        """
        color = Color(color)
        domain = topology.domain
        if live is None:
            live = self.live_containers()
        document = self.layout.document(domain, color)
        previous = document.read_bytes() if document.exists() else None

        with reload_lock(self.layout.conf_dir):
            self.synthesizer.commit(topology, color, live)
            test = self._validate(domain)
            try:
                if not test.ok:
                    raise SwitchError(f"nginx -t failed after refreshing {document.name}")
                self.proxy.reload()
            except (SwitchError, CommandError):
                if previous is not None:
                    document.write_bytes(previous)
                    self.proxy.reload()
                raise

    def reconcile(self, topology: ServiceTopology, color: Color) -> Optional[SwitchResult]:
        """Point the proxy at `color` if it points anywhere else."""
        color = Color(color)
        current = self.layout.current_color(topology.domain)
        if current is color and self.layout.document(topology.domain, color).exists():
            return None
        logger.warning(
            f"  Proxy for {topology.domain} points at {current.value if current else 'nothing'}, "
            f"state says {color.value}; reconciling"
        )
        return self.switch(topology, color)
