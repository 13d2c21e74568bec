"""Observability helpers (Sentry init & scrubbing).

API and worker share one initialisation path so their configuration does not
drift.  Every helper is a no-op when ``SENTRY_DSN`` is unset, which is the
case under test.

Claim descriptions, rejection reasons and account e-mails never leave the
process: they are stripped from request bodies, breadcrumbs and extras.
Expected domain errors (4xx) are not reported.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receiptflow.core.config import settings

_SCRUB_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "stripe-signature"})
_SCRUB_FIELDS = frozenset({"description", "rejection_reason", "reason", "email", "notes"})


def _scrub_mapping(data: Dict[str, Any] | None) -> Dict[str, Any]:
	return {k: ("[scrubbed]" if k in _SCRUB_FIELDS else v) for k, v in (data or {}).items()}


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
	"""Drop credentials and claim free text before an event is sent."""
	req = event.get("request") or {}
	headers = req.get("headers") or {}
	for k in list(headers.keys()):
		if k.lower() in _SCRUB_HEADERS:
			headers.pop(k, None)
	req.pop("data", None)
	if req:
		event["request"] = req
	user = event.get("user")
	if isinstance(user, dict):
		user.pop("email", None)
	if isinstance(event.get("extra"), dict):
		event["extra"] = _scrub_mapping(event["extra"])
	return event


def _before_breadcrumb(crumb: Dict[str, Any], hint: Dict[str, Any] | None = None):
	if isinstance(crumb.get("data"), dict):
		crumb["data"] = _scrub_mapping(crumb["data"])
	return crumb


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once per process; True when a DSN was configured."""
	if not settings.SENTRY_DSN:
		return False
	if getattr(init_sentry, "_done", False):
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=[FastApiIntegration(), SqlalchemyIntegration()],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		before_send=_before_send,
		before_breadcrumb=_before_breadcrumb,
		send_default_pii=False,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	"""Set short string tags (account, team, event type) on the current scope."""
	if not settings.SENTRY_DSN:
		return
	for k, v in (tags or {}).items():
		sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Record a lifecycle step such as a claim transition or an entitlement denial."""
	if not settings.SENTRY_DSN:
		return
	sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})


def should_report(exc: BaseException) -> bool:
	"""Domain errors below 500 are part of normal operation."""
	status_code = getattr(exc, "status_code", None)
	return status_code is None or int(status_code) >= 500


def sentry_capture(exc: BaseException) -> None:
	if not settings.SENTRY_DSN or not should_report(exc):
		return
	sentry_sdk.capture_exception(exc)


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_capture", "should_report"]
