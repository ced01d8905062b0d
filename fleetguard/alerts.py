"""Text of every message the engine sends."""
import datetime as dt
from typing import Optional

HEADERS = {
    "enter": ("📍", "ZONE ENTRY"),
    "exit": ("🚪", "ZONE EXIT"),
    "not_departed": ("⚠️", "MISSED DEPARTURE"),
    "not_arrived": ("🚨", "MISSED ARRIVAL"),
    "route_arrival": ("🎯", "DESTINATION REACHED"),
}

CONFIRMED_REPLY = "✅ Confirmation received. Thank you!"


def _fmt(ts: Optional[dt.datetime]) -> str:
    return ts.strftime("%d/%m/%Y %H:%M") if ts else "n/a"


def vehicle_label(name: Optional[str], plate: Optional[str]) -> str:
    if name and plate and name != plate:
        return f"{name} ({plate})"
    return name or plate or "unknown vehicle"


def build_alert_message(task, now_local: dt.datetime) -> str:
    emoji, title = HEADERS.get(task.event_type, ("📢", "NOTIFICATION"))
    lines = [
        f"{emoji} *{title}*",
        "",
        f"Vehicle: *{vehicle_label(task.vehicle_name, task.vehicle_plate)}*",
    ]

    if task.event_type in ("enter", "exit"):
        lines.append(f"Zone: *{task.zone_name or 'n/a'}*")
    elif task.zone_name:
        lines.append(f"Destination: *{task.zone_name}*")

    if task.route_name:
        lines.append(f"Route: *{task.route_name}*")
    if task.detail:
        lines.append(task.detail)
    if task.moving is not None:
        lines.append("Status: moving" if task.moving else "Status: stopped")

    lines.append(f"Time: {_fmt(now_local)}")
    return "\n".join(lines)


def render_template(template: str, alarm_type: Optional[str], plate: Optional[str], message: str) -> str:
    return (
        template
        .replace("{alarm_type}", alarm_type or "generic")
        .replace("{plate}", plate or "n/a")
        .replace("{message}", message or "")
    )


def urgent_message(original: str) -> str:
    return (
        "🚨 URGENT - AUTOMATIC CALL 🚨\n\n"
        "You did not answer the previous alarm!\n\n"
        f"{original}\n\n"
        "⚠️ If you do not answer within a few minutes your manager will be contacted.\n\n"
        "Reply OK to confirm."
    )


def responsable_message(notification, driver) -> str:
    driver_info = (
        f"{driver.full_name} ({driver.phone})" if driver else "Unidentified driver"
    )
    return (
        "🚨 ALARM ESCALATION 🚨\n\n"
        "The driver has NOT answered the alarm!\n\n"
        "📋 Details:\n"
        f"• Vehicle: {notification.vehicle_plate or 'n/a'}\n"
        f"• Driver: {driver_info}\n"
        f"• Alarm: {notification.message}\n"
        f"• Sent: {_fmt(notification.sent_at)}\n"
        f"• Call: {_fmt(notification.call_at) if notification.call_made else 'not made'}\n\n"
        "⚠️ Immediate action required!"
    )


def responded_reply(body: str) -> str:
    return f'📝 Reply recorded: "{body}"'
