"""User-facing notices emitted by the acquisition pipeline.

The presentation layer receives ``Notice`` objects through a ``NoticeSink``
callable; it decides how to show them (alert, toast, push).  Messages are
localized from a small catalog; English and Persian ship by default.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger("healthrelay.wearables.notices")


class NoticeKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    INSTALL_REQUIRED = "install_required"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    SYNC_SUCCESS = "sync_success"
    SYNC_FAILURE = "sync_failure"


@dataclass(frozen=True)
class Notice:
    """A single message for the user.

    Attributes:
        kind:         What happened.
        title:        Short heading.
        message:      Explanatory text.
        action_label: Label for an optional call-to-action (e.g. "Install").
        action_url:   Link the action opens (store page, settings screen).
    """

    kind: NoticeKind
    title: str
    message: str
    action_label: str | None = None
    action_url: str | None = None


NoticeSink = Callable[[Notice], None]


# kind → (title, message, action_label); ``{provider}`` is substituted.
_CATALOG: dict[str, dict[NoticeKind, tuple[str, str, str | None]]] = {
    "en": {
        NoticeKind.PERMISSION_DENIED: (
            "Permission denied",
            "Access to {provider} was declined. Grant permission to continue.",
            None,
        ),
        NoticeKind.INSTALL_REQUIRED: (
            "{provider} is not installed",
            "{provider} must be installed to read health data.",
            "Install",
        ),
        NoticeKind.PROVIDER_UNAVAILABLE: (
            "No health data source",
            "Could not read data from {provider}. Install or configure it and try again.",
            "Install",
        ),
        NoticeKind.SYNC_SUCCESS: (
            "Success",
            "Health data synced successfully!",
            None,
        ),
        NoticeKind.SYNC_FAILURE: (
            "Error",
            "Failed to sync health data.",
            None,
        ),
    },
    "fa": {
        NoticeKind.PERMISSION_DENIED: (
            "دسترسی رد شد",
            "برای ادامه نیاز به اجازه دارید.",
            None,
        ),
        NoticeKind.INSTALL_REQUIRED: (
            "{provider} نصب نیست",
            "برای ادامه باید {provider} نصب شود.",
            "نصب",
        ),
        NoticeKind.PROVIDER_UNAVAILABLE: (
            "منبع داده در دسترس نیست",
            "دریافت داده از {provider} ممکن نشد. آن را نصب یا پیکربندی کنید.",
            "نصب",
        ),
        NoticeKind.SYNC_SUCCESS: (
            "موفق",
            "داده‌های سلامت با موفقیت همگام‌سازی شد.",
            None,
        ),
        NoticeKind.SYNC_FAILURE: (
            "خطا",
            "همگام‌سازی داده‌های سلامت ناموفق بود.",
            None,
        ),
    },
}


def build_notice(
    kind: NoticeKind,
    locale: str = "en",
    provider: str = "",
    action_url: str | None = None,
) -> Notice:
    """Render a localized notice.

    Unknown locales fall back to English.  The action label is dropped when
    there is no URL to act on.
    """
    catalog = _CATALOG.get(locale, _CATALOG["en"])
    title, message, action_label = catalog[kind]
    return Notice(
        kind=kind,
        title=title.format(provider=provider),
        message=message.format(provider=provider),
        action_label=action_label if action_url else None,
        action_url=action_url,
    )


def log_notice(notice: Notice) -> None:
    """Default sink: write the notice to the log."""
    level = logging.INFO if notice.kind == NoticeKind.SYNC_SUCCESS else logging.WARNING
    logger.log(level, "[%s] %s: %s", notice.kind.value, notice.title, notice.message)
