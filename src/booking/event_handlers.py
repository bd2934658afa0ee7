from functools import partial

from shared_kernel.interfaces import IEventBus

from .domain import BookingCancelled, BookingConfirmed, BookingModified
from .interfaces import INotificationService


async def on_booking_confirmed(
    event: BookingConfirmed, notifications: "INotificationService"
) -> None:
    """Отправляет гостю подтверждение бронирования."""
    await notifications.send_booking_confirmation(
        {
            "booking_id": str(event.booking_id),
            "confirmation_number": event.confirmation_number,
            "guest_id": str(event.guest_id),
            "check_in": event.check_in.isoformat(),
            "check_out": event.check_out.isoformat(),
            "total_amount": str(event.total_amount),
            "currency": event.currency,
        }
    )


async def on_booking_modified(
    event: BookingModified, notifications: "INotificationService"
) -> None:
    await notifications.send_booking_update(
        {
            "booking_id": str(event.booking_id),
            "confirmation_number": event.confirmation_number,
            "guest_id": str(event.guest_id),
            "update": "modified",
            "difference": str(event.difference),
        }
    )


async def on_booking_cancelled(
    event: BookingCancelled, notifications: "INotificationService"
) -> None:
    await notifications.send_booking_update(
        {
            "booking_id": str(event.booking_id),
            "confirmation_number": event.confirmation_number,
            "guest_id": str(event.guest_id),
            "update": "cancelled",
            "refund_amount": str(event.refund_amount),
        }
    )


def register_notification_handlers(
    event_bus: IEventBus, notifications: INotificationService
) -> None:
    """Подписывает уведомления гостя на события бронирования."""
    event_bus.subscribe(
        BookingConfirmed, partial(on_booking_confirmed, notifications=notifications)
    )
    event_bus.subscribe(
        BookingModified, partial(on_booking_modified, notifications=notifications)
    )
    event_bus.subscribe(
        BookingCancelled, partial(on_booking_cancelled, notifications=notifications)
    )
