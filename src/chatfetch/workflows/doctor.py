"""``chatfetch doctor``: effective settings and installed dependencies at a glance."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, List, Optional

from .fetcher_utils import collect_environment_warnings, is_http_url
from .pipeline import ChatPolicy, load_policy

# Distributions the fetch and extract path cannot run without.
REQUIRED_DISTRIBUTIONS = ("aiohttp", "beautifulsoup4", "lxml")


def mask_secret(secret: Optional[str], visible: int = 4) -> str:
    """Show only the edges of a secret; short secrets are fully masked."""

    cleaned = (secret or "").strip()
    if len(cleaned) <= visible * 2:
        return "*" * len(cleaned)
    return cleaned[:visible] + "..." + cleaned[-visible:]


@dataclass
class DoctorCheck:
    name: str
    passed: bool
    detail: str = ""
    remedy: str = ""
    # "warn" checks make the report fail; "info" checks never do.
    severity: str = "warn"
    value: Optional[str] = None


@dataclass
class DoctorReport:
    generated_at: str
    checks: List[DoctorCheck] = field(default_factory=list)
    environment_warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(check.passed for check in self.checks if check.severity == "warn")

    def check(self, name: str) -> Optional[DoctorCheck]:
        return next((item for item in self.checks if item.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["ok"] = self.ok
        return payload


def _installed_version(distribution: str) -> Optional[str]:
    try:
        return metadata.version(distribution)
    except metadata.PackageNotFoundError:
        return None


def build_doctor_report(*, policy: Optional[ChatPolicy] = None, env_file: Optional[Path] = None) -> DoctorReport:
    active = policy or load_policy()
    stamp = datetime.now(timezone.utc).replace(microsecond=0)
    report = DoctorReport(
        generated_at=stamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
        environment_warnings=collect_environment_warnings(),
    )

    report.checks.append(
        DoctorCheck(
            "CHATFETCH_CHAT_ENDPOINT",
            is_http_url(active.chat_endpoint),
            detail="Generation endpoint used for streaming replies",
            remedy="Set CHATFETCH_CHAT_ENDPOINT to an absolute http(s) URL.",
            value=active.chat_endpoint,
        )
    )
    report.checks.append(
        DoctorCheck(
            "CHATFETCH_API_TOKEN",
            bool(active.api_token),
            detail="Sent as a bearer token" if active.api_token else "Requests are unauthenticated",
            remedy="Set CHATFETCH_API_TOKEN if the endpoint requires auth.",
            severity="info",
            value=mask_secret(active.api_token) if active.api_token else None,
        )
    )
    report.checks.append(
        DoctorCheck(
            "fetch_policy",
            True,
            detail=(
                f"attempts={active.max_attempts} backoff_base={active.backoff_base}s "
                f"budget={active.fetch_budget_ms}ms word_limit={active.word_limit} "
                f"strict_directives={active.strict_directives}"
            ),
            severity="info",
        )
    )
    for distribution in REQUIRED_DISTRIBUTIONS:
        version = _installed_version(distribution)
        report.checks.append(
            DoctorCheck(
                distribution,
                version is not None,
                detail=f"version {version}" if version else "not installed",
                remedy=f"pip install {distribution}",
            )
        )

    dotenv_path = env_file or Path(os.getcwd()) / ".env"
    report.checks.append(
        DoctorCheck(
            ".env",
            dotenv_path.exists(),
            detail=str(dotenv_path),
            remedy="Optional: put CHATFETCH_* settings in a .env file.",
            severity="info",
        )
    )
    return report


def format_doctor_report(report: DoctorReport) -> str:
    out = [
        "chatfetch doctor",
        f"Generated: {report.generated_at}",
        f"Overall: {'ok' if report.ok else 'needs attention'}",
        "",
    ]
    for item in report.checks:
        state = "ok" if item.passed else "missing"
        shown = f" ({item.value})" if item.value else ""
        out.append(f"- [{item.severity}] {item.name}: {state}{shown}")
        if item.detail:
            out.append(f"    {item.detail}")
        if item.remedy and not item.passed:
            out.append(f"    fix: {item.remedy}")
    if report.environment_warnings:
        out.append("")
        out.append("Environment warnings:")
        out.extend(
            f"- {warning.get('code', 'warning')}: {warning.get('message', '')}"
            for warning in report.environment_warnings
        )
    return "\n".join(out) + "\n"


__all__ = ["DoctorCheck", "DoctorReport", "build_doctor_report", "format_doctor_report", "mask_secret"]
