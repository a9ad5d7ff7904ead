"""Subscription notifications — queued dispatch and email rendering.

Callers never send mail inline: ``NotificationDispatcher.dispatch`` enqueues an
ARQ job and returns. The worker later runs ``send_subscription_notification``,
which renders the message and hands it to Resend.
"""

import logging
from enum import StrEnum
from typing import Any

from arq import ArqRedis
from fastapi import Request
from jinja2 import Environment
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.config import get_settings
from kentra.constants import NOTIFICATION_JOB
from kentra.models.user import User
from kentra.services.email_service import send_email

logger = logging.getLogger(__name__)


class NotificationType(StrEnum):
    TRIAL_STARTED = "trial_started"
    TRIAL_EXPIRING = "trial_expiring"
    TRIAL_EXPIRED = "trial_expired"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    PAYMENT_EXPIRED = "payment_expired"
    PAYMENT_FAILED = "payment_failed"
    RENEWAL_SUCCESS = "renewal_success"
    RENEWAL_REMINDER = "renewal_reminder"


# type -> (subject, body)
_TEMPLATES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.TRIAL_STARTED: (
        "Tu prueba gratuita de {{ trial_days }} días ha comenzado",
        "<p>Hola {{ name }}, ya puedes publicar tus propiedades en Kentra.</p>"
        "<p>Tu prueba termina el {{ expiry_date }}.</p>",
    ),
    NotificationType.TRIAL_EXPIRING: (
        "Tu prueba gratuita termina en {{ days_remaining }} días",
        "<p>Hola {{ name }}, tu prueba gratuita vence el {{ expiry_date }}.</p>"
        "<p>Contrata un plan para que tus propiedades sigan visibles.</p>",
    ),
    NotificationType.TRIAL_EXPIRED: (
        "Tu prueba gratuita ha terminado",
        "<p>Hola {{ name }}, tu prueba de {{ trial_days }} días terminó el {{ expired_date }}.</p>"
        "<p>Tus propiedades fueron pausadas. Contrata un plan para reactivarlas.</p>",
    ),
    NotificationType.SUBSCRIPTION_CANCELED: (
        "Tu suscripción ha sido cancelada",
        "<p>Hola {{ name }}, tu suscripción {{ plan_name }} fue cancelada.</p>",
    ),
    NotificationType.SUBSCRIPTION_SUSPENDED: (
        "Tu suscripción ha sido suspendida",
        "<p>Hola {{ name }}, no pudimos cobrar tu plan {{ plan_name }} "
        "después de {{ days_past_due }} días.</p>"
        "<p>Tus propiedades fueron pausadas el {{ suspended_date }}. "
        "Actualiza tu método de pago para reactivarlas.</p>",
    ),
    NotificationType.PAYMENT_EXPIRED: (
        "El tiempo para completar tu pago ha expirado",
        "<p>Hola {{ name }}, tu pago del plan {{ plan_name }} no se completó "
        "en {{ hours }} horas y fue cancelado.</p>",
    ),
    NotificationType.PAYMENT_FAILED: (
        "No pudimos procesar tu pago",
        "<p>Hola {{ name }}, tu pago del plan {{ plan_name }} fue rechazado. "
        "Tienes {{ grace_days }} días para actualizar tu método de pago.</p>",
    ),
    NotificationType.RENEWAL_SUCCESS: (
        "Tu suscripción se renovó",
        "<p>Hola {{ name }}, tu plan {{ plan_name }} se renovó correctamente.</p>",
    ),
    NotificationType.RENEWAL_REMINDER: (
        "Tu suscripción se renueva en {{ days_remaining }} días",
        "<p>Hola {{ name }}, tu plan {{ plan_name }} ({{ billing_cycle }}) se renovará "
        "automáticamente el {{ renewal_date }}.</p>"
        "<p>Si quieres cambiar de plan o cancelar, hazlo desde tu panel antes de esa fecha.</p>",
    ),
}

_jinja_env = Environment(autoescape=True)


def render_notification(
    notification_type: NotificationType, name: str, metadata: dict[str, Any]
) -> tuple[str, str]:
    """Render (subject, html) for a notification."""
    subject_src, body_src = _TEMPLATES[notification_type]
    context = {"name": name, **metadata}
    subject = _jinja_env.from_string(subject_src).render(**context)
    body = _jinja_env.from_string(body_src).render(**context)
    return subject, body


class NotificationDispatcher:
    """Queue subscription notifications for the worker.

    ``dispatch`` raises if the queue is unreachable; batch jobs wrap it so a
    failed enqueue never undoes the state change it reports on.
    """

    def __init__(self, redis: ArqRedis | None):
        self._redis = redis

    async def dispatch(
        self,
        user_id: int,
        notification_type: NotificationType,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        if self._redis is None:
            logger.warning(
                "No job queue configured, dropping %s notification for user %s",
                notification_type, user_id,
            )
            return False
        await self._redis.enqueue_job(NOTIFICATION_JOB, user_id, str(notification_type), metadata or {})
        logger.info("Queued %s notification for user %s", notification_type, user_id)
        return True


async def send_subscription_notification(
    db: AsyncSession,
    user_id: int,
    notification_type: str,
    metadata: dict[str, Any],
) -> bool:
    """Render and email a notification. Returns True if the email went out."""
    try:
        kind = NotificationType(notification_type)
    except ValueError:
        logger.error("Invalid notification type %r for user %s", notification_type, user_id)
        return False

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.email:
        logger.warning("User %s has no email address, skipping %s", user_id, kind)
        return False

    subject, html = render_notification(kind, user.full_name or user.email, metadata)
    settings = get_settings()
    html += f'<p><a href="{settings.frontend_url}/panel-agente?tab=subscription">Administrar mi suscripción</a></p>'
    return await send_email(user.email, subject, html)


def get_notifier(request: Request) -> NotificationDispatcher:
    """FastAPI dependency: dispatcher bound to the app's ARQ pool, if any."""
    return NotificationDispatcher(getattr(request.app.state, "arq_redis", None))
