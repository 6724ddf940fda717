"""nginx configuration synthesis for blue/green domains.

Layout under the nginx conf.d directory:

    blue-green/<domain>.blue.conf    validated document routing to blue
    blue-green/<domain>.green.conf   validated document routing to green
    <domain>.conf                    symlink to one of the two (the live pointer)
    staging/                         freshly rendered, not yet validated
    rejected/                        documents that failed validation

nginx only includes the top-level *.conf files, so documents under
blue-green/ are inert until the pointer names them.
"""

import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set

from bluegreen.compose import PortResolver
from bluegreen.errors import SwitchError
from bluegreen.models import Color, ServiceTopology

logger = logging.getLogger(__name__)

PLACEHOLDER_SERVER = "server 127.0.0.1:65535 down;"
SERVER_PARAMS = "max_fails=3 fail_timeout=30s"

DEFAULT_TEMPLATE = """\
# Managed by bluegreen for {{DOMAIN_NAME}}. Regenerated on every switch.

{{UPSTREAM_BLOCKS}}
server {
    listen 80;
    listen [::]:80;
    server_name {{DOMAIN_NAME}};

{{PROXY_LOCATIONS}}
}
"""

_UPSTREAM_RE = re.compile(r"\bupstream\s+([\w.\-]+)\s*\{(.*?)\}", re.S)


# ── Rendering ─────────────────────────────────────────────────────


def upstream_name(base: str, color: Color) -> str:
    return f"{base}-{Color(color).value}"


def render_upstream(base: str, port: int, color: Color, live: Set[str]) -> str:
    """Upstream for one sub-service as seen by `color`'s document.

    Only containers that exist are listed, since nginx refuses to load an
    upstream whose host does not resolve. The target color is primary and
    the other color is a backup; when the target has no container the
    primary slot is a placeholder marked down.
    """
    color = Color(color)
    name = upstream_name(base, color)
    primary = f"{base}-{color.value}"
    secondary = f"{base}-{color.other().value}"

    lines = [f"upstream {name} {{", f"    zone {name}_zone 64k;"]
    if primary in live:
        lines.append(f"    server {primary}:{port} weight=100 {SERVER_PARAMS};")
    else:
        lines.append(f"    {PLACEHOLDER_SERVER}")
    if secondary in live:
        lines.append(f"    server {secondary}:{port} backup {SERVER_PARAMS};")
    lines.append("}")
    return "\n".join(lines) + "\n"


def _proxy_location(path: str, upstream: str, upstream_path: str = "", websocket: bool = False) -> str:
    lines = [
        f"    location {path} {{",
        f"        proxy_pass http://{upstream}{upstream_path};",
        "        proxy_http_version 1.1;",
        "        proxy_set_header Host $host;",
        "        proxy_set_header X-Real-IP $remote_addr;",
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "        proxy_set_header X-Forwarded-Proto $scheme;",
        "        proxy_next_upstream error timeout http_502 http_503;",
    ]
    if websocket:
        lines += [
            "        proxy_set_header Upgrade $http_upgrade;",
            '        proxy_set_header Connection "upgrade";',
            "        proxy_read_timeout 3600s;",
        ]
    lines.append("    }")
    return "\n".join(lines) + "\n"


def route_table(topology: ServiceTopology, keys: List[str]) -> Dict[str, str]:
    """Map URL location -> sub-service key for the sub-services in `keys`."""
    routes: Dict[str, str] = {}
    for key in keys:
        spec = topology.services[key]
        if spec.location:
            routes.setdefault(spec.location, key)
    if "frontend" in keys:
        routes.setdefault("/", "frontend")
    if "backend" in keys:
        routes.setdefault("/api/", "backend")
        routes.setdefault("/ws", "backend")
        routes.setdefault("/health", "backend")
    if "api-gateway" in keys:
        routes.setdefault("/api/", "api-gateway")
    if "/" not in routes and keys:
        routes["/"] = "backend" if "backend" in keys else keys[0]
    return routes


def parse_upstreams(document: str) -> Dict[str, List[str]]:
    """Upstream name -> list of `server ...;` lines."""
    upstreams = {}
    for name, body in _UPSTREAM_RE.findall(document):
        upstreams[name] = [
            line.strip() for line in body.splitlines() if line.strip().startswith("server ")
        ]
    return upstreams


def pre_validate(document: str) -> List[str]:
    """Static checks that do not need a running nginx."""
    problems = []
    if not document.strip():
        return ["document is empty"]
    if document.count("{") != document.count("}"):
        problems.append("unbalanced braces")
    if "{{" in document or "}}" in document:
        problems.append("unresolved template placeholder")
    upstreams = parse_upstreams(document)
    if not upstreams:
        problems.append("no upstream blocks")
    for name, servers in upstreams.items():
        if not servers:
            problems.append(f"upstream {name} has no servers")
    return problems


# ── Filesystem layout and pointer ─────────────────────────────────


class ProxyLayout:
    def __init__(self, conf_dir: Path):
        self.conf_dir = Path(conf_dir)
        self.blue_green_dir = self.conf_dir / "blue-green"
        self.staging_dir = self.conf_dir / "staging"
        self.rejected_dir = self.conf_dir / "rejected"

    def ensure_dirs(self) -> None:
        for d in (self.blue_green_dir, self.staging_dir, self.rejected_dir):
            d.mkdir(parents=True, exist_ok=True)

    def document(self, domain: str, color: Color) -> Path:
        return self.blue_green_dir / f"{domain}.{Color(color).value}.conf"

    def pointer(self, domain: str) -> Path:
        return self.conf_dir / f"{domain}.conf"

    def document_names(self, domain: str) -> List[str]:
        return [self.pointer(domain).name] + [self.document(domain, c).name for c in Color]

    def current_color(self, domain: str) -> Optional[Color]:
        pointer = self.pointer(domain)
        if not pointer.is_symlink():
            return None
        target = os.readlink(pointer)
        for color in Color:
            if target.endswith(f"{domain}.{color.value}.conf"):
                return color
        return None

    def snapshot(self, domain: str):
        """Capture the pointer exactly so it can be restored byte-for-byte."""
        pointer = self.pointer(domain)
        if pointer.is_symlink():
            return ("link", os.readlink(pointer))
        if pointer.exists():
            return ("file", pointer.read_bytes())
        return ("absent", None)

    def restore(self, domain: str, snapshot) -> None:
        kind, value = snapshot
        pointer = self.pointer(domain)
        if kind == "link":
            self._atomic_symlink(value, pointer)
        elif kind == "file":
            tmp = pointer.with_name(f".{pointer.name}.restore")
            tmp.write_bytes(value)
            os.replace(tmp, pointer)
        elif pointer.is_symlink() or pointer.exists():
            pointer.unlink()

    def point(self, domain: str, color: Color) -> None:
        target = self.document(domain, color)
        if not target.exists():
            raise SwitchError(f"Refusing to point {domain} at missing document {target.name}")
        relative = os.path.relpath(target, self.conf_dir)
        self._atomic_symlink(relative, self.pointer(domain))
        logger.info(f"  {self.pointer(domain).name} -> {relative}")

    @staticmethod
    def _atomic_symlink(target: str, link: Path) -> None:
        tmp = link.with_name(f".{link.name}.{os.getpid()}.tmp")
        if tmp.is_symlink() or tmp.exists():
            tmp.unlink()
        os.symlink(target, tmp)
        os.replace(tmp, link)

    def fix_broken_symlinks(self) -> List[str]:
        removed = []
        if not self.conf_dir.is_dir():
            return removed
        for path in self.conf_dir.glob("*.conf"):
            if path.is_symlink() and not path.exists():
                logger.warning(f"  Removing broken symlink {path.name} -> {os.readlink(path)}")
                path.unlink()
                removed.append(path.name)
        return removed


# ── Synthesizer ───────────────────────────────────────────────────


class ConfigSynthesizer:
    def __init__(self, layout: ProxyLayout, ports: PortResolver, template_path: Path = None):
        self.layout = layout
        self.ports = ports
        self.template_path = Path(template_path) if template_path else None

    def _template(self) -> str:
        if self.template_path and self.template_path.exists():
            return self.template_path.read_text()
        return DEFAULT_TEMPLATE

    def render(self, topology: ServiceTopology, color: Color, live: Set[str]) -> str:
        color = Color(color)
        upstreams = []
        routed_keys = []
        for key, spec in topology.services.items():
            port = self.ports.container_port(topology, key, spec, color)
            if port is None:
                logger.warning(f"  No port for {key}, leaving it out of {topology.domain} config")
                continue
            upstreams.append(render_upstream(spec.container_name_base, port, color, live))
            routed_keys.append(key)

        locations = []
        for path, key in route_table(topology, routed_keys).items():
            upstream = upstream_name(topology.services[key].container_name_base, color)
            upstream_path = path if path.startswith("/api/") else ""
            locations.append(_proxy_location(path, upstream, upstream_path, websocket=(path == "/ws")))

        return (
            self._template()
            .replace("{{DOMAIN_NAME}}", topology.domain)
            .replace("{{UPSTREAM_BLOCKS}}", "\n".join(upstreams))
            .replace("{{PROXY_LOCATIONS}}", "\n".join(locations))
        )

    def compatibility_problems(self, domain: str, document: str) -> List[str]:
        """Upstream names that another domain's documents already define."""
        ours = set(parse_upstreams(document))
        if not ours or not self.layout.blue_green_dir.is_dir():
            return []
        own = set(self.layout.document_names(domain))
        problems = []
        for other in sorted(self.layout.blue_green_dir.glob("*.conf")):
            if other.name in own:
                continue
            clash = ours & set(parse_upstreams(other.read_text()))
            for name in sorted(clash):
                problems.append(f"duplicate upstream {name} (also in {other.name})")
        return problems

    def _reject(self, staged: Path, domain: str, color: Color, problems: List[str]) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        rejected = self.layout.rejected_dir / f"{domain}.{Color(color).value}.conf.{stamp}"
        os.replace(staged, rejected)
        logger.error(f"  Rejected {domain} {Color(color).value} config: {'; '.join(problems)}")
        logger.error(f"  Saved as {rejected}")
        return rejected

    def commit(self, topology: ServiceTopology, color: Color, live: Set[str]) -> Path:
        """render -> stage -> validate -> move into blue-green/. Raises SwitchError on rejection."""
        color = Color(color)
        domain = topology.domain
        self.layout.ensure_dirs()
        document = self.render(topology, color, live)

        staged = self.layout.staging_dir / f"{domain}.{color.value}.conf"
        staged.write_text(document)
        problems = pre_validate(document) + self.compatibility_problems(domain, document)
        if problems:
            self._reject(staged, domain, color, problems)
            raise SwitchError(f"Generated {color.value} config for {domain} is invalid: {'; '.join(problems)}")

        target = self.layout.document(domain, color)
        os.replace(staged, target)
        logger.debug(f"  Committed {target.name}")
        return target

    def ensure_documents(self, topology: ServiceTopology, target: Color, live: Set[str]) -> None:
        """Fresh document for `target`; the other color's only when missing."""
        target = Color(target)
        self.commit(topology, target, live)
        other = target.other()
        if not self.layout.document(topology.domain, other).exists():
            logger.info(f"  {other.value} config missing for {topology.domain}, generating it")
            self.commit(topology, other, live)
