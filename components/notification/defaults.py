"""Default reminder templates seeded into a fresh database."""

from typing import List

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from components.notification.models import Channel, NotificationTemplate, ScheduleOffset

DEFAULT_TEMPLATES = [
    {
        "name": "Reminder H-7 Email",
        "channel": Channel.EMAIL,
        "schedule_offset": ScheduleOffset.BEFORE_D7,
        "subject": "Pengingat: Angsuran {contract_number} jatuh tempo dalam 7 hari",
        "body": (
            "Yth. {customer_name},\n\n"
            "Angsuran kontrak {contract_number} sebesar {amount} akan jatuh tempo "
            "pada {due_date}.\n\n"
            "Pembayaran dapat dilakukan melalui {payment_link}.\n\n"
            "Untuk pertanyaan, hubungi kami di {support_contact}.\n\n"
            "Terima kasih."
        ),
    },
    {
        "name": "Reminder H-3 WhatsApp",
        "channel": Channel.WHATSAPP,
        "schedule_offset": ScheduleOffset.BEFORE_D3,
        "subject": "",
        "body": (
            "Halo {customer_name}, angsuran kontrak {contract_number} sebesar {amount} "
            "jatuh tempo dalam 3 hari ({due_date}).\n"
            "Bayar: {payment_link}\n"
            "CS: {support_contact}"
        ),
    },
    {
        "name": "Reminder H-1 Email",
        "channel": Channel.EMAIL,
        "schedule_offset": ScheduleOffset.BEFORE_D1,
        "subject": "Angsuran {contract_number} jatuh tempo besok",
        "body": (
            "Yth. {customer_name},\n\n"
            "Angsuran kontrak {contract_number} sebesar {amount} jatuh tempo besok, "
            "{due_date}.\n\n"
            "Bayar sekarang: {payment_link}\n\n"
            "Terima kasih."
        ),
    },
    {
        "name": "Overdue H+1 WhatsApp",
        "channel": Channel.WHATSAPP,
        "schedule_offset": ScheduleOffset.AFTER_D1,
        "subject": "",
        "body": (
            "TERLAMBAT: Halo {customer_name}, angsuran kontrak {contract_number} "
            "sebesar {amount} telah jatuh tempo pada {due_date}.\n"
            "Segera lakukan pembayaran untuk menghindari denda.\n"
            "Bayar: {payment_link}\n"
            "CS: {support_contact}"
        ),
    },
    {
        "name": "Overdue H+3 Email",
        "channel": Channel.EMAIL,
        "schedule_offset": ScheduleOffset.AFTER_D3,
        "subject": "TERLAMBAT: Angsuran {contract_number}",
        "body": (
            "Yth. {customer_name},\n\n"
            "Angsuran kontrak {contract_number} sebesar {amount} telah terlambat 3 hari "
            "(jatuh tempo {due_date}).\n\n"
            "Segera lakukan pembayaran melalui {payment_link}.\n\n"
            "Hubungi CS: {support_contact}\n\n"
            "Terima kasih."
        ),
    },
    {
        "name": "Overdue H+7 Final Warning",
        "channel": Channel.EMAIL,
        "schedule_offset": ScheduleOffset.AFTER_D7,
        "subject": "PERINGATAN TERAKHIR: Angsuran {contract_number}",
        "body": (
            "Yth. {customer_name},\n\n"
            "Ini adalah peringatan terakhir untuk angsuran kontrak {contract_number} "
            "sebesar {amount} yang telah terlambat 7 hari (jatuh tempo {due_date}).\n\n"
            "Bayar segera: {payment_link}\n\n"
            "Hubungi CS: {support_contact}\n\n"
            "Terima kasih."
        ),
    },
]


def build_default_templates(created_at=None) -> List[NotificationTemplate]:
    templates = []
    for item in DEFAULT_TEMPLATES:
        template = NotificationTemplate(
            name=item["name"],
            channel=item["channel"],
            subject=item["subject"],
            body=item["body"],
            schedule_offset=int(item["schedule_offset"]),
            active=True,
        )
        if created_at is not None:
            template.created_at = created_at
        templates.append(template)
    return templates


async def seed_default_templates(session: AsyncSession, created_at=None) -> int:
    """Insert the default templates unless templates already exist. Returns rows added."""
    result = await session.execute(select(func.count(NotificationTemplate.id)))
    if result.scalar_one() > 0:
        return 0

    templates = build_default_templates(created_at)
    session.add_all(templates)
    await session.commit()
    return len(templates)
