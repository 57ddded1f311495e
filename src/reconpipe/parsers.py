"""Tool output parsers — raw CLI text in, structured records out.

Each parser is a pure function and tolerates garbage input by returning an
empty record.  The executor calls them after a command finishes; a parser
that raises is logged and ignored, so none of these sit on the control path.
"""

from __future__ import annotations

import json
import re
from typing import Any

from reconpipe.types import DirectoryFinding, Finding, PortFinding

SEVERITIES = ("info", "low", "medium", "high", "critical")

# ---------------------------------------------------------------------------
# DNS / WHOIS / subdomains
# ---------------------------------------------------------------------------


def parse_dig_short(output: str) -> list[str]:
    """Records from ``dig +short``, one per line, comments dropped."""
    return [
        line.strip().rstrip(".")
        for line in output.splitlines()
        if line.strip() and not line.strip().startswith(";")
    ]


_WHOIS_FIELDS: dict[str, tuple[str, ...]] = {
    "registrar": ("registrar:", "registrar name:"),
    "registrant_org": ("registrant organization:", "registrant org:"),
    "created": ("creation date:", "created:"),
    "expires": ("registry expiry date:", "expiry date:", "expires:"),
    "updated": ("updated date:", "last updated:"),
    "dnssec": ("dnssec:",),
}


def _value_after_colon(line: str) -> str:
    return line.split(":", 1)[1].strip() if ":" in line else ""


def parse_whois(output: str) -> dict[str, Any]:
    result: dict[str, Any] = {"name_servers": [], "status": []}
    for raw in output.splitlines():
        lower = raw.strip().lower()
        for key, prefixes in _WHOIS_FIELDS.items():
            if key not in result and lower.startswith(prefixes):
                result[key] = _value_after_colon(raw)
        if lower.startswith(("name server:", "nserver:")):
            ns = _value_after_colon(raw).lower()
            if ns and ns not in result["name_servers"]:
                result["name_servers"].append(ns)
        elif lower.startswith(("domain status:", "status:")):
            # "clientTransferProhibited https://icann.org/epp#..." → first token
            status = _value_after_colon(raw).split(" ")[0]
            if status and status not in result["status"]:
                result["status"].append(status)
    return result


def parse_subdomains(output: str) -> list[str]:
    seen: dict[str, None] = {}
    for line in output.splitlines():
        line = line.strip().lower()
        if line and not line.startswith("[") and "." in line:
            seen.setdefault(line, None)
    return list(seen)


# ---------------------------------------------------------------------------
# HTTP headers
# ---------------------------------------------------------------------------

_SECURITY_HEADERS = {
    "HSTS": "strict-transport-security",
    "CSP": "content-security-policy",
    "X-Content-Type-Options": "x-content-type-options",
    "X-Frame-Options": "x-frame-options",
    "Referrer-Policy": "referrer-policy",
}

# (header substring, technology name, category)
_TECH_HINTS = (
    ("x-aspnet-version", "ASP.NET", "Framework"),
    ("x-drupal", "Drupal", "CMS"),
    ("x-generator: drupal", "Drupal", "CMS"),
    ("x-wordpress", "WordPress", "CMS"),
    ("x-pingback", "WordPress", "CMS"),
    ("x-shopify", "Shopify", "E-Commerce"),
)


def _split_product(value: str) -> tuple[str, str]:
    name, _, version = value.partition("/")
    return name.strip(), version.strip()


def parse_http_headers(output: str) -> dict[str, Any]:
    """Parse ``curl -sI -L`` output.

    With ``-L`` several responses are concatenated; the last status line
    wins and every ``Location`` is kept as the redirect chain.
    """
    result: dict[str, Any] = {
        "status_code": None,
        "server": None,
        "powered_by": None,
        "redirect_chain": [],
    }
    for raw in output.splitlines():
        line = raw.strip()
        lower = line.lower()
        if lower.startswith("http/"):
            parts = line.split()
            if len(parts) > 1 and parts[1].isdigit():
                result["status_code"] = int(parts[1])
        elif lower.startswith("server:"):
            result["server"] = _value_after_colon(line)
        elif lower.startswith("x-powered-by:"):
            result["powered_by"] = _value_after_colon(line)
        elif lower.startswith("location:"):
            result["redirect_chain"].append(_value_after_colon(line))

    result["technologies"] = detect_technologies(output, result)
    result.update(score_security_headers(output))
    return result


def detect_technologies(output: str, headers: dict[str, Any]) -> list[dict[str, str]]:
    techs: list[dict[str, str]] = []
    if headers.get("server"):
        name, version = _split_product(headers["server"])
        techs.append({"name": name, "category": "Web Server", "version": version})
    if headers.get("powered_by"):
        name, version = _split_product(headers["powered_by"])
        techs.append({"name": name, "category": "Language/Framework", "version": version})

    lower = output.lower()
    seen = {t["name"] for t in techs}
    for needle, name, category in _TECH_HINTS:
        if needle in lower and name not in seen:
            techs.append({"name": name, "category": category, "version": ""})
            seen.add(name)
    return techs


def score_security_headers(output: str) -> dict[str, Any]:
    """20 points per present security header, 0-100."""
    lower = output.lower()
    missing = [label for label, header in _SECURITY_HEADERS.items() if header not in lower]
    return {
        "security_score": 20 * (len(_SECURITY_HEADERS) - len(missing)),
        "missing_headers": missing,
    }


# ---------------------------------------------------------------------------
# ping
# ---------------------------------------------------------------------------

_PING_STATS_RE = re.compile(
    r"(\d+) packets transmitted, (\d+) (?:packets )?received, (\d+(?:\.\d+)?)% packet loss"
)
_PING_RTT_RE = re.compile(
    r"(?:rtt|round-trip) min/avg/max/(?:mdev|std-dev|stddev) = "
    r"([\d.]+)/([\d.]+)/([\d.]+)/([\d.]+)"
)


def parse_ping(output: str) -> dict[str, Any]:
    stats = _PING_STATS_RE.search(output)
    if stats is None:
        return {}
    result: dict[str, Any] = {
        "transmitted": int(stats.group(1)),
        "received": int(stats.group(2)),
        "loss_percent": float(stats.group(3)),
    }
    rtt = _PING_RTT_RE.search(output)
    if rtt is not None:
        result["avg_rtt_ms"] = float(rtt.group(2))
    return result


# ---------------------------------------------------------------------------
# nmap
# ---------------------------------------------------------------------------

_NMAP_PORT_RE = re.compile(r"^(\d+)/(tcp|udp)\s+(open|closed|filtered)\s+(\S+)(?:\s+(.+))?")


def parse_nmap(output: str) -> dict[str, Any]:
    """Parse normal-format nmap output into host status and port list."""
    ports: list[PortFinding] = []
    host_status = "unknown"
    os_guess: str | None = None

    lowered = output.lower()
    if "host seems down" in lowered or "0 hosts up" in lowered:
        host_status = "down"

    for line in output.splitlines():
        if "Host is up" in line:
            host_status = "up"
        match = _NMAP_PORT_RE.match(line.strip())
        if match:
            version = match.group(5).strip() if match.group(5) else None
            ports.append(
                PortFinding(
                    port=int(match.group(1)),
                    protocol=match.group(2),
                    state=match.group(3),
                    service=match.group(4),
                    version=version or None,
                )
            )
        if "OS details:" in line or "Running:" in line:
            os_guess = _value_after_colon(line)

    return {"host_status": host_status, "ports": ports, "os_guess": os_guess}


# ---------------------------------------------------------------------------
# gobuster
# ---------------------------------------------------------------------------

_GOBUSTER_RE = re.compile(r"^(/\S*)\s+\(Status:\s*(\d+)\)(?:\s+\[Size:\s*(\d+)\])?")
_GOBUSTER_ALT_RE = re.compile(r"^(/\S*)\s+\[Status=(\d+)(?:,\s*Size=(\d+))?\]")


def parse_gobuster(output: str) -> list[DirectoryFinding]:
    dirs: list[DirectoryFinding] = []
    for line in output.splitlines():
        line = line.strip()
        match = _GOBUSTER_RE.match(line) or _GOBUSTER_ALT_RE.match(line)
        if match:
            dirs.append(
                DirectoryFinding(
                    path=match.group(1),
                    status_code=int(match.group(2)),
                    size=int(match.group(3)) if match.group(3) else None,
                )
            )
    return dirs


# ---------------------------------------------------------------------------
# nuclei
# ---------------------------------------------------------------------------

_NUCLEI_TEXT_RE = re.compile(r"\[([^\]]+)\]\s+\[(\w+)\]\s+\[(\w+)\]\s+(\S+)(?:\s+\[(.+)\])?")


def _title_from_template(template_id: str) -> str:
    return re.sub(r"[:\-]", " ", template_id).title()


def _nuclei_json(line: str) -> Finding | None:
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict) or "template-id" not in data:
        return None
    info = data.get("info") or {}
    severity = str(info.get("severity") or "info").lower()
    return Finding(
        source="nuclei",
        template_id=data["template-id"],
        name=info.get("name") or data["template-id"],
        severity=severity if severity in SEVERITIES else "info",
        url=data.get("matched-at") or data.get("host") or data.get("matched"),
        description=info.get("description"),
    )


def parse_nuclei(output: str) -> list[Finding]:
    """Parse nuclei output in either ``-jsonl`` or default text format."""
    findings: list[Finding] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith(("[INF]", "[WRN]", "[ERR]")):
            continue
        if line.startswith("{"):
            finding = _nuclei_json(line)
            if finding is not None:
                findings.append(finding)
            continue
        match = _NUCLEI_TEXT_RE.search(line)
        if match and match.group(2).lower() in SEVERITIES:
            findings.append(
                Finding(
                    source="nuclei",
                    template_id=match.group(1),
                    name=_title_from_template(match.group(1)),
                    severity=match.group(2).lower(),
                    url=match.group(4),
                    description=match.group(5),
                )
            )
    return findings


# ---------------------------------------------------------------------------
# nikto
# ---------------------------------------------------------------------------

_NIKTO_OSVDB_RE = re.compile(r"^\+\s+OSVDB-(\d+):\s+(\S+):\s+(.+)")
_NIKTO_RE = re.compile(r"^\+\s+(\S+):\s+(.+)")
_NIKTO_NOISE = ("server:", "retrieved")


def parse_nikto(output: str) -> list[Finding]:
    """Nikto doesn't rate its items; every finding is reported as medium."""
    findings: list[Finding] = []
    for line in output.splitlines():
        line = line.strip()
        osvdb = _NIKTO_OSVDB_RE.match(line)
        if osvdb:
            desc = osvdb.group(3).strip()
            findings.append(
                Finding(
                    source="nikto",
                    template_id=f"OSVDB-{osvdb.group(1)}",
                    name=desc[:100],
                    severity="medium",
                    url=osvdb.group(2),
                    description=desc,
                )
            )
            continue
        match = _NIKTO_RE.match(line)
        if not match:
            continue
        desc = match.group(2).strip()
        if len(desc) < 10 or any(noise in desc.lower() for noise in _NIKTO_NOISE):
            continue
        findings.append(
            Finding(
                source="nikto",
                name=desc[:100],
                severity="medium",
                url=match.group(1),
                description=desc,
            )
        )
    return findings
