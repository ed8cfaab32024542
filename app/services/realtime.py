"""
Внутрипроцессная рассылка событий реального времени.

Подписчики (SSE-соединения, Telegram-уведомления) регистрируются на события
конкретного пользователя, дилера, роли или на все события сразу.
Доставка "не более одного раза": ошибки подписчиков логируются и не
пробрасываются в сервисы чата. Клиенты, пропустившие событие, перечитывают
состояние канала через history_service.
"""
import asyncio
import datetime
import inspect
import logging
from collections import defaultdict
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field

from app.models.models import utcnow

ADMIN_ROLES = ("admin", "super_admin")


class ChatMessageEvent(BaseModel):
    channel_id: int
    channel_number: str
    message_id: int
    sender_id: int
    sender_name: str
    sender_role: str
    content: str
    message_type: str = "text"
    attachments: Optional[List[Dict[str, Any]]] = None
    is_system_message: bool = False
    system_action: Optional[str] = None
    created_at: datetime.datetime


class ChatTypingEvent(BaseModel):
    channel_id: int
    user_id: int
    user_name: str
    is_typing: bool


class ChatStatusEvent(BaseModel):
    channel_id: int
    channel_number: str
    status: str
    previous_status: Optional[str] = None
    updated_by_id: Optional[int] = None
    updated_by_name: Optional[str] = None
    close_reason: Optional[str] = None


class ChatAssignedEvent(BaseModel):
    channel_id: int
    channel_number: str
    assigned_to_id: int
    assigned_to_name: str
    previous_assignee_id: Optional[int] = None
    previous_assignee_name: Optional[str] = None
    department: str


class NewChatEvent(BaseModel):
    channel_id: int
    channel_number: str
    dealer_name: str
    department: str
    subject: Optional[str] = None


class RealtimeEvent(BaseModel):
    type: str
    payload: BaseModel
    timestamp: datetime.datetime = Field(default_factory=utcnow)
    target_user_ids: List[int] = Field(default_factory=list)
    target_dealer_ids: List[int] = Field(default_factory=list)
    target_roles: List[str] = Field(default_factory=list)
    dealer_id: Optional[int] = None  # тенант, которому принадлежит событие


# Синхронный вызов или корутина; корутины выполняются фоновыми задачами
EventCallback = Callable[[RealtimeEvent], Union[None, Awaitable[None]]]


class RealtimeEmitter:
    """
    Подписки и рассылка событий внутри одного процесса.

    Для нескольких инстансов приложения нужен внешний брокер (например, Redis pub/sub).
    """

    def __init__(self):
        self._all: Set[EventCallback] = set()
        self._users: Dict[int, Set[EventCallback]] = defaultdict(set)
        self._dealers: Dict[int, Set[EventCallback]] = defaultdict(set)
        self._roles: Dict[str, Set[EventCallback]] = defaultdict(set)
        # Ссылки на незавершенные доставки, чтобы задачи не собрал сборщик мусора
        self._pending: Set["asyncio.Future[None]"] = set()

    @staticmethod
    def _subscribe(bucket: Set[EventCallback], callback: EventCallback) -> Callable[[], None]:
        bucket.add(callback)
        return lambda: bucket.discard(callback)

    def subscribe_all(self, callback: EventCallback) -> Callable[[], None]:
        return self._subscribe(self._all, callback)

    def subscribe_user(self, user_id: int, callback: EventCallback) -> Callable[[], None]:
        return self._subscribe(self._users[user_id], callback)

    def subscribe_dealer(self, dealer_id: int, callback: EventCallback) -> Callable[[], None]:
        return self._subscribe(self._dealers[dealer_id], callback)

    def subscribe_role(self, role: str, callback: EventCallback) -> Callable[[], None]:
        return self._subscribe(self._roles[role], callback)

    def _collect(self, event: RealtimeEvent) -> List[EventCallback]:
        # Один подписчик получает событие один раз, даже если подходит по нескольким ключам
        callbacks: List[EventCallback] = []
        seen: Set[EventCallback] = set()
        buckets = [self._all]
        buckets += [self._users.get(user_id, set()) for user_id in event.target_user_ids]
        buckets += [self._dealers.get(dealer_id, set()) for dealer_id in event.target_dealer_ids]
        buckets += [self._roles.get(role, set()) for role in event.target_roles]
        for bucket in buckets:
            for callback in list(bucket):
                if callback not in seen:
                    seen.add(callback)
                    callbacks.append(callback)
        return callbacks

    def emit(self, event: RealtimeEvent) -> None:
        """
        Рассылает событие подходящим подписчикам и сразу возвращает управление.

        Синхронные подписчики (например, запись в очередь SSE-соединения) вызываются сразу.
        Асинхронные запускаются фоновыми задачами: сервисы чата не ждут доставки.
        Ошибки подписчиков только логируются.
        """
        for callback in self._collect(event):
            try:
                result = callback(event)
            except Exception as e:
                logging.error(f"Realtime subscriber {callback!r} failed on '{event.type}' event: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(partial(self._on_delivered, callback, event.type))

    def _on_delivered(self, callback: EventCallback, event_type: str, task: "asyncio.Future[None]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logging.error(f"Realtime subscriber {callback!r} failed on '{event_type}' event: {error}")

    async def wait_idle(self) -> None:
        """Дожидается фоновых доставок (остановка приложения, тесты)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> Dict[str, int]:
        """Количество подписчиков для мониторинга."""
        return {
            "all_subscribers": len(self._all),
            "user_subscribers": sum(len(bucket) for bucket in self._users.values()),
            "dealer_subscribers": sum(len(bucket) for bucket in self._dealers.values()),
            "role_subscribers": sum(len(bucket) for bucket in self._roles.values()),
        }


# Единственный экземпляр на процесс
realtime_emitter = RealtimeEmitter()


def create_client_subscription(
    user_id: int, role: str, dealer_id: Optional[int], callback: EventCallback
) -> Callable[[], None]:
    """
    Подписывает подключенного клиента на его пользовательские, дилерские и ролевые события.
    Возвращает функцию отписки.
    """
    unsubscribers = [
        realtime_emitter.subscribe_user(user_id, callback),
        realtime_emitter.subscribe_role(role, callback),
    ]
    if dealer_id is not None:
        unsubscribers.append(realtime_emitter.subscribe_dealer(dealer_id, callback))

    def unsubscribe() -> None:
        for unsub in unsubscribers:
            unsub()

    return unsubscribe


def emit_chat_message(event: ChatMessageEvent, target_user_ids: List[int], tenant_id: int) -> None:
    realtime_emitter.emit(
        RealtimeEvent(type="chat_message", payload=event, target_user_ids=target_user_ids, dealer_id=tenant_id)
    )


def emit_chat_typing(event: ChatTypingEvent, target_user_ids: List[int]) -> None:
    realtime_emitter.emit(
        RealtimeEvent(type="chat_typing", payload=event, target_user_ids=target_user_ids)
    )


def emit_chat_status(event: ChatStatusEvent, target_user_ids: List[int], tenant_id: int) -> None:
    realtime_emitter.emit(
        RealtimeEvent(type="chat_status", payload=event, target_user_ids=target_user_ids, dealer_id=tenant_id)
    )


def emit_chat_assigned(event: ChatAssignedEvent, target_user_ids: List[int], tenant_id: int) -> None:
    realtime_emitter.emit(
        RealtimeEvent(type="chat_assigned", payload=event, target_user_ids=target_user_ids, dealer_id=tenant_id)
    )


def emit_new_chat_notification(
    channel_id: int,
    channel_number: str,
    tenant_name: str,
    department: str,
    subject: Optional[str] = None,
) -> None:
    """Оповещает администраторов о новом (или переданном в другой отдел) чате."""
    event = NewChatEvent(
        channel_id=channel_id,
        channel_number=channel_number,
        dealer_name=tenant_name,
        department=department,
        subject=subject,
    )
    realtime_emitter.emit(
        RealtimeEvent(type="new_chat", payload=event, target_roles=list(ADMIN_ROLES))
    )
