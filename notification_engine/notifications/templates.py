"""Email subject and HTML body rendering for every notification kind.

Rendering is pure: no I/O, no clock reads except when ``completion`` stamps
today's date. All dynamic values are HTML-escaped.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from html import escape
from typing import Any, Protocol, assert_never

from .exceptions import TemplateRenderError
from .models import NotificationKind


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html_body: str


class TemplateRenderer(Protocol):
    def render(self, kind: NotificationKind, payload: dict, recipient_name: str = "") -> RenderedMessage: ...


def _format_date(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return escape(value)
    if isinstance(value, datetime):
        return value.strftime("%B %d, %Y")
    return escape(str(value))


def _e(payload: dict, key: str, default: str = "") -> str:
    value = payload.get(key)
    return escape(str(value)) if value not in (None, "") else escape(default)


def _details(css: str, inner: str) -> str:
    return f'<div class="details {css}" style="padding:20px 24px; border-radius:8px; margin:20px 0;">{inner}</div>'


def _button(href: str, label: str) -> str:
    return (
        f'<a href="{escape(href, quote=True)}" class="button" '
        f'style="display:inline-block; background-color:#1e40af; color:#ffffff; padding:12px 28px; '
        f'border-radius:6px; text-decoration:none; font-weight:600;">{escape(label)}</a>'
    )


class EmailTemplateRenderer:
    """Default renderer producing self-contained HTML emails with inline styles."""

    def __init__(self, frontend_url: str, brand_name: str = "Training Portal") -> None:
        self.frontend_url = frontend_url.rstrip("/")
        self.brand_name = brand_name

    def render(self, kind: NotificationKind, payload: dict, recipient_name: str = "") -> RenderedMessage:
        try:
            kind = NotificationKind(kind)
            subject = self.subject(kind, payload)
            content = self.content(kind, payload)
        except TemplateRenderError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise TemplateRenderError(f"Cannot render {kind}: {exc}") from exc
        return RenderedMessage(subject=subject, html_body=self._wrap(content, recipient_name))

    # ── Subjects ──────────────────────────────────────────────────────

    def subject(self, kind: NotificationKind, payload: dict) -> str:
        title = payload.get("title") or payload.get("chapter_title") or ""
        entity = payload.get("entity_type", "item")
        match kind:
            case NotificationKind.NEW_WORKSTREAM:
                return f"New Workstream Published: {title}"
            case NotificationKind.NEW_CHAPTER:
                return f"New Chapter in {payload.get('workstream_title') or 'your workstream'}: {title}"
            case NotificationKind.NEW_ASSESSMENT:
                return f"New Assessment Published: {title}"
            case NotificationKind.UPDATE:
                return f"Updated: {title}"
            case NotificationKind.REMINDER:
                return f"Reminder: {title}"
            case NotificationKind.COMPLETION:
                return f"Workstream Completed: {title}"
            case NotificationKind.OVERDUE:
                return f"Overdue: {title}"
            case NotificationKind.REASSIGNMENT:
                return f"Reassigned: {title}"
            case NotificationKind.CANCELLATION:
                return f"Cancelled: {title}"
            case NotificationKind.DEADLINE_REMINDER_WEEK:
                return f"Reminder: {entity} Deadline Approaching - {title}"
            case NotificationKind.DEADLINE_REMINDER_DAY:
                return f"Urgent: {entity} Due Tomorrow - {title}"
            case _:
                assert_never(kind)

    # ── Bodies ────────────────────────────────────────────────────────

    def _link(self, payload: dict) -> str:
        entity = payload.get("entity_type", "workstream")
        return f"{self.frontend_url}/{entity}s/{payload.get('id', '')}"

    def content(self, kind: NotificationKind, payload: dict) -> str:
        if "title" not in payload and "chapter_title" not in payload:
            raise TemplateRenderError(f"Payload for {kind} has no title")

        title = _e(payload, "title") or _e(payload, "chapter_title")
        entity = _e(payload, "entity_type", "item")
        deadline = _format_date(payload.get("deadline"))
        deadline_line = f"<p><strong>Deadline:</strong> {deadline}</p>" if deadline else ""

        match kind:
            case NotificationKind.NEW_WORKSTREAM:
                return (
                    "<p>A new training workstream is now available.</p>"
                    + _details("success", f"<h3>{title}</h3><p><strong>Overview:</strong> {_e(payload, 'description')}</p>"
                               + (f"<p><strong>Target completion:</strong> {deadline}</p>" if deadline else ""))
                    + _button(f"{self.frontend_url}/workstreams/{payload.get('workstream_id', payload.get('id', ''))}",
                              "Begin Learning Journey")
                )
            case NotificationKind.NEW_CHAPTER:
                return (
                    "<p>A new chapter has been published and is ready for your review.</p>"
                    + _details("success", f"<h3>{title}</h3>"
                               f"<p><strong>Part of workstream:</strong> {_e(payload, 'workstream_title')}</p>"
                               f"<p><strong>Content overview:</strong> {_e(payload, 'content', 'New learning material available')}</p>"
                               + (f"<p><strong>Recommended completion:</strong> {deadline}</p>" if deadline else ""))
                    + _button(f"{self.frontend_url}/workstreams/{payload.get('workstream_id', '')}"
                              f"/chapters/{payload.get('chapter_id', payload.get('id', ''))}", "Access Chapter")
                )
            case NotificationKind.NEW_ASSESSMENT:
                related = _e(payload, "chapter_title") or _e(payload, "workstream_title", "Training Module")
                return (
                    "<p>An assessment is now available for you to demonstrate your knowledge.</p>"
                    + _details("success", f"<h3>{title}</h3>"
                               f"<p><strong>Related to:</strong> {related}</p>"
                               f"<p><strong>Total points:</strong> {_e(payload, 'total_points', 'TBD')}</p>"
                               f"<p><strong>Passing score:</strong> {_e(payload, 'passing_score', '70')}%</p>"
                               + (f"<p><strong>Due date:</strong> {deadline}</p>" if deadline else ""))
                    + _button(f"{self.frontend_url}/assessments/{payload.get('assessment_id', payload.get('id', ''))}",
                              "Begin Assessment")
                )
            case NotificationKind.UPDATE:
                rows = "".join(
                    f"<li><strong>{escape(str(c.get('field', '')))}:</strong> "
                    f"{escape(str(c.get('old_value', '')))} &rarr; {escape(str(c.get('new_value', '')))}</li>"
                    for c in payload.get("changes", [])
                )
                return (
                    "<p>An item in your training has been updated. Please review the changes below.</p>"
                    + _details("", f"<h3>{title}</h3><p><strong>Type:</strong> {entity}</p><ul>{rows}</ul>")
                    + _button(self._link(payload), f"View updated {payload.get('entity_type', 'item')}")
                )
            case NotificationKind.REMINDER:
                return (
                    _details("warning", f"<h3>Reminder</h3><p><strong>{title}</strong></p>{deadline_line}"
                             f"<p>{_e(payload, 'message', 'This item still needs your attention.')}</p>")
                    + _button(self._link(payload), f"Open {payload.get('entity_type', 'item')}")
                )
            case NotificationKind.COMPLETION:
                completed = datetime.now(UTC).strftime("%B %d, %Y")
                next_steps = _e(payload, "next_steps")
                return (
                    _details("success", f"<h3>Congratulations! Workstream Completed</h3>"
                             f"<p><strong>{title}</strong></p><p><strong>Completed on:</strong> {completed}</p>")
                    + "<p>Excellent work! You have successfully completed this workstream.</p>"
                    + (f"<p><strong>Next steps:</strong> {next_steps}</p>" if next_steps else "")
                    + _button(f"{self.frontend_url}/dashboard", "View Dashboard")
                )
            case NotificationKind.OVERDUE:
                return (
                    _details("urgent", f"<h3>Overdue: Immediate Action Required</h3><p><strong>{title}</strong></p>"
                             f"<p><strong>Original deadline:</strong> {deadline}</p>"
                             f"<p><strong>Days overdue:</strong> {_e(payload, 'days_overdue', '?')}</p>")
                    + _button(self._link(payload), "Complete Immediately")
                    + f"<p><strong>This {entity} is overdue and requires immediate completion.</strong></p>"
                )
            case NotificationKind.REASSIGNMENT:
                return (
                    _details("warning", f"<h3>You have been assigned</h3><p><strong>{title}</strong></p>{deadline_line}")
                    + _button(self._link(payload), f"Open {payload.get('entity_type', 'item')}")
                )
            case NotificationKind.CANCELLATION:
                return _details(
                    "", f"<h3>Cancelled</h3><p><strong>{title}</strong> has been cancelled and no longer requires action.</p>"
                )
            case NotificationKind.DEADLINE_REMINDER_WEEK:
                return (
                    _details("warning", f"<h3>Deadline Reminder - 1 Week</h3><p><strong>{title}</strong></p>{deadline_line}"
                             f"<p>You have <strong>1 week</strong> remaining to complete this {entity}.</p>")
                    + _button(self._link(payload), f"Continue {payload.get('entity_type', 'item')}")
                )
            case NotificationKind.DEADLINE_REMINDER_DAY:
                return (
                    _details("urgent", f"<h3>Urgent: Deadline Tomorrow!</h3><p><strong>{title}</strong></p>{deadline_line}"
                             f"<p>You have <strong>less than 24 hours</strong> to complete this {entity}!</p>")
                    + _button(self._link(payload), "Complete Now")
                )
            case _:
                assert_never(kind)

    def _wrap(self, content: str, recipient_name: str) -> str:
        name = escape(recipient_name) if recipient_name else "there"
        brand = escape(self.brand_name)
        return f"""\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{brand} Notification</title>
</head>
<body style="margin:0; padding:0; background-color:#f8fafc; font-family:'Segoe UI',Arial,Helvetica,sans-serif; color:#2c3e50;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0">
    <tr><td align="center" style="padding:24px 16px;">
      <table role="presentation" width="600" cellpadding="0" cellspacing="0" style="background-color:#ffffff; border-radius:8px;">
        <tr><td style="background-color:#1e40af; padding:24px 32px; border-radius:8px 8px 0 0;">
          <h1 style="margin:0; color:#ffffff; font-size:20px;">{brand}</h1>
        </td></tr>
        <tr><td style="padding:32px;">
          <h2 style="margin-top:0;">Hello {name},</h2>
          {content}
        </td></tr>
        <tr><td style="padding:16px 32px; border-top:1px solid #e5e7eb; color:#64748b; font-size:12px;">
          This is an automated notification about your training progress.
        </td></tr>
      </table>
    </td></tr>
  </table>
</body>
</html>"""
