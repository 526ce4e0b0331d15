"""
Message formatting for notification deliveries.

Builds the WhatsApp text and the equivalent HTML email for a batch of
pending notifications, plus the courtesy, error, test and pairing
messages. Texts are in Spanish, as delivered to the portal's users.
"""

import html
from dataclasses import dataclass, field
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from sinoe_common.constants import (
    CHAT_ADDRESS_SUFFIX,
    DEFAULT_TIMEZONE,
    MAX_ITEMS_PER_MESSAGE,
    SUMMARY_PREVIEW_LENGTH,
)
from sinoe_common.models import NotificationRecord, NotificationStatus, Recipient, normalize_phone

HEADER = "🏛️ *SINOE - Notificaciones Electrónicas*"
FOOTER = "🤖 _Generado automáticamente por el sistema SINOE_"
EMPTY_LINE = "📊 No se encontraron notificaciones nuevas."


def format_chat_id(phone: str) -> str:
    """
    Convert a phone number to a WhatsApp chat address.

    Keeps digits only and prefixes the Peruvian country code to 9-digit
    local numbers.

    Example:
        format_chat_id("900 000 001")  # "51900000001@c.us"
    """
    return normalize_phone(phone) + CHAT_ADDRESS_SUFFIX


def format_timestamp(now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> str:
    """Local display time, e.g. "15/01/2025, 10:30"."""
    moment = (now or datetime.now(UTC)).astimezone(ZoneInfo(timezone))
    return moment.strftime("%d/%m/%Y, %H:%M")


def _status_icon(status: NotificationStatus) -> str:
    return "🔴" if status is NotificationStatus.CLOSED else "🟢"


def _status_label(status: NotificationStatus) -> str:
    return "CERRADA" if status is NotificationStatus.CLOSED else "ABIERTA"


def _preview(summary: str) -> str:
    if len(summary) > SUMMARY_PREVIEW_LENGTH:
        return summary[:SUMMARY_PREVIEW_LENGTH] + "..."
    return summary


@dataclass
class BatchMessage:
    """
    One recipient's batched delivery, in both channel formats.

    Attributes:
        included: Records itemized in the message (the ones to mark)
        overflow: Pending records summarized only as a count
        text: WhatsApp text
        subject: Email subject
        html: Email HTML body
    """

    included: list[NotificationRecord] = field(default_factory=list)
    overflow: int = 0
    text: str = ""
    subject: str = ""
    html: str = ""

    @property
    def total(self) -> int:
        return len(self.included) + self.overflow


def build_batch_message(
    records: list[NotificationRecord],
    max_items: int = MAX_ITEMS_PER_MESSAGE,
    now: datetime | None = None,
    timezone: str = DEFAULT_TIMEZONE,
) -> BatchMessage:
    """
    Format pending notifications as one message.

    At most max_items records are itemized; the rest are reported as a
    count and stay pending.

    Args:
        records: Pending records for one recipient
        max_items: Cap on itemized entries
        now: Timestamp to display (defaults to now)
        timezone: Display timezone

    Returns:
        BatchMessage with text, subject and HTML body
    """
    included = records[:max_items]
    overflow = max(len(records) - max_items, 0)
    stamp = format_timestamp(now, timezone)

    lines = [HEADER, f"📅 {stamp}", "", f"📊 *Resumen:* {len(records)} notificación(es) encontrada(s)", ""]
    for index, record in enumerate(included, start=1):
        lines.append(f"{_status_icon(record.status)} *{index}.* {record.notification_id}")
        lines.append(f"📄 Exp: {record.case_id}")
        lines.append(f"📋 {_preview(record.summary)}")
        lines.append(f"🏢 {record.office}")
        lines.append(f"📅 {record.date}")
        lines.append("")
    if overflow:
        lines.append(f"... y {overflow} más.")
        lines.append("")
    lines.append(FOOTER)

    closed = sum(1 for r in records if r.status is NotificationStatus.CLOSED)
    opened = len(records) - closed
    subject = f"🏛️ SINOE - {len(records)} Notificaciones: {opened} Abiertas, {closed} Cerradas"

    return BatchMessage(
        included=included,
        overflow=overflow,
        text="\n".join(lines),
        subject=subject,
        html=_batch_html(included, overflow, len(records), opened, closed, stamp),
    )


def _batch_html(
    included: list[NotificationRecord], overflow: int, total: int, opened: int, closed: int, stamp: str
) -> str:
    cell = 'style="padding: 8px; border: 1px solid #ddd;"'
    rows = []
    for index, record in enumerate(included, start=1):
        background = ' style="background-color: #f8f9fa;"' if index % 2 else ""
        rows.append(
            f"<tr{background}>"
            f"<td {cell}>{index}</td>"
            f"<td {cell}>{_status_icon(record.status)} {_status_label(record.status)}</td>"
            f"<td {cell}><strong>{html.escape(record.notification_id)}</strong></td>"
            f"<td {cell}>{html.escape(record.case_id)}</td>"
            f"<td {cell}>{html.escape(record.summary)}</td>"
            f"<td {cell}>{html.escape(record.office)}</td>"
            f"<td {cell}>{html.escape(record.date)}</td>"
            "</tr>"
        )
    more = f"<p>... y {overflow} más.</p>" if overflow else ""
    headers = "".join(
        f'<th style="padding: 10px; border: 1px solid #ddd;">{h}</th>'
        for h in ("#", "Estado", "Notificación", "Expediente", "Sumilla", "Oficina", "Fecha")
    )

    return (
        '<div style="font-family: Arial, sans-serif; max-width: 800px; margin: 0 auto;">'
        '<h2 style="color: #2c3e50;">🏛️ SINOE - Notificaciones Electrónicas</h2>'
        f"<p><strong>📅 Fecha:</strong> {stamp}</p>"
        f"<p><strong>📊 Resumen:</strong> {total} notificación(es) encontrada(s)</p>"
        f"<p>🟢 <strong>{opened} Abiertas</strong> | 🔴 <strong>{closed} Cerradas</strong></p>"
        '<table style="width: 100%; border-collapse: collapse;">'
        f'<thead><tr style="background-color: #3498db; color: white;">{headers}</tr></thead>'
        f"<tbody>{''.join(rows)}</tbody></table>{more}"
        '<p style="font-size: 14px; color: #7f8c8d;">'
        "🤖 <em>Generado automáticamente por el sistema SINOE</em><br>"
        "📧 <em>Este correo fue enviado como respaldo debido a fallas en WhatsApp</em></p>"
        "</div>"
    )


def build_courtesy_message(now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> str:
    """Message sent when a recipient has nothing pending."""
    return "\n".join([HEADER, f"📅 {format_timestamp(now, timezone)}", "", EMPTY_LINE, "", FOOTER])


def build_error_message(error: str, now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> str:
    return (
        f"🚨 *SINOE - Error de Sistema*\n\n📅 {format_timestamp(now, timezone)}\n\n"
        f"❌ Error: {error}\n\n🤖 _Sistema de notificaciones SINOE_"
    )


def build_error_html(error: str, now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #e74c3c;">🚨 SINOE - Error de Sistema</h2>'
        f"<p><strong>📅 Fecha:</strong> {format_timestamp(now, timezone)}</p>"
        '<div style="background-color: #f8d7da; border: 1px solid #f5c6cb; padding: 15px;">'
        f"<h3>❌ Error Detectado:</h3><p><strong>{html.escape(error)}</strong></p></div>"
        '<p style="font-size: 14px; color: #7f8c8d;">🤖 <em>Notificación automática del sistema SINOE</em></p>'
        "</div>"
    )


def build_test_message(connected: bool, now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE) -> str:
    state = "Connected" if connected else "Disconnected"
    return (
        "🧪 *Test Message*\n\nWhatsApp single client system is working!\n\n"
        f"📱 Client status: {state}\n\n📅 {format_timestamp(now, timezone)}\n\n"
        "🤖 _SINOE Notification System_"
    )


def build_pairing_email(
    user: Recipient, now: datetime | None = None, timezone: str = DEFAULT_TIMEZONE
) -> tuple[str, str]:
    """
    Subject and HTML body of the QR pairing email.

    The HTML references the QR image as cid:qr-code.
    """
    subject = f"🏛️ SINOE - Código QR para WhatsApp ({user.name})"
    body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        "<h1>🏛️ SINOE - Sistema de Notificaciones</h1>"
        f"<h2>📱 Configuración de WhatsApp</h2><p><strong>Usuario:</strong> {html.escape(user.name)}</p>"
        "<h3>📋 Instrucciones para conectar WhatsApp:</h3><ol>"
        "<li>Abre WhatsApp en tu teléfono móvil</li>"
        "<li>Ve a <strong>Configuración → Dispositivos vinculados</strong></li>"
        "<li>Toca <strong>\"Vincular un dispositivo\"</strong></li>"
        "<li>Escanea el código QR que aparece a continuación</li></ol>"
        '<img src="cid:qr-code" alt="WhatsApp QR Code" style="max-width: 300px;">'
        "<p><strong>⏰ Importante:</strong> Este código QR expira en unos minutos. "
        "Si no puedes escanearlo a tiempo, se generará uno nuevo automáticamente.</p>"
        f"<p>📅 Generado el: {format_timestamp(now, timezone)}</p>"
        "<p>🤖 <em>Sistema automático de notificaciones SINOE</em></p>"
        "</div>"
    )
    return subject, body
