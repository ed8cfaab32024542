"""
Сервис присутствия: статусы агентов поддержки и индикатор набора текста.
"""
import logging
from typing import List, Optional

from sqlmodel import Session, col, select

from app.core.config import settings
from app.models.models import (
    AgentPresence,
    ChatAgentStatus,
    ChatChannel,
    ChatChannelAgent,
    ChatDepartment,
    User,
    utcnow,
)
from app.services import realtime
from app.services.message_service import channel_participants


def sync_agents_from_env(session: Session) -> None:
    """
    Синхронизирует статусы агентов в БД со списком из переменных окружения.

    - Создает статус (offline) для новых агентов, если такой пользователь есть на портале.
    - Включает автоназначение агентам, которые есть в .env.
    - Выключает автоназначение агентам, которых убрали из .env.
    """
    logging.info("Starting agent synchronization from .env file...")
    env_agent_ids = set(settings.AGENT_IDS)

    # 1. Получаем все статусы агентов из БД
    db_statuses = session.exec(select(ChatAgentStatus)).all()
    db_agent_ids = {status.user_id for status in db_statuses}

    # 2. Добавляем новых агентов
    for agent_id in sorted(env_agent_ids - db_agent_ids):
        if not session.get(User, agent_id):
            logging.warning(f"Agent ID {agent_id} from .env does not match any portal user. Skipped.")
            continue
        session.add(
            ChatAgentStatus(
                user_id=agent_id,
                status=AgentPresence.OFFLINE.value,
                departments=list(settings.CHAT_DEFAULT_DEPARTMENTS),
                max_active_chats=settings.CHAT_MAX_ACTIVE_CHATS,
                auto_assign_enabled=True,
            )
        )
        logging.info(f"Added new agent with ID: {agent_id}")

    # 3. Обновляем признак автоназначения у существующих
    for agent_status in db_statuses:
        configured = agent_status.user_id in env_agent_ids
        if agent_status.auto_assign_enabled != configured:
            agent_status.auto_assign_enabled = configured
            session.add(agent_status)
            logging.info(
                f"{'Enabled' if configured else 'Disabled'} auto-assign for agent {agent_status.user_id}"
            )

    session.commit()
    logging.info("Agent synchronization finished.")


def update_agent_status(
    session: Session,
    user_id: int,
    status: AgentPresence,
    status_message: Optional[str] = None,
    departments: Optional[List[str]] = None,
) -> ChatAgentStatus:
    """
    Создает или обновляет статус присутствия агента.

    :param departments: Новый список отделов; None - оставить как есть.
    """
    now = utcnow()
    status = AgentPresence(status)

    agent_status = session.get(ChatAgentStatus, user_id)
    if agent_status is None:
        agent_status = ChatAgentStatus(
            user_id=user_id,
            departments=list(settings.CHAT_DEFAULT_DEPARTMENTS),
            max_active_chats=settings.CHAT_MAX_ACTIVE_CHATS,
        )

    agent_status.status = status.value
    agent_status.status_message = status_message
    if departments is not None:
        agent_status.departments = [ChatDepartment(item).value for item in departments]
    if status == AgentPresence.ONLINE:
        agent_status.last_online_at = now
    agent_status.last_activity_at = now

    session.add(agent_status)
    session.commit()
    session.refresh(agent_status)
    logging.info(f"Agent {user_id} is now {status.value}.")
    return agent_status


def get_available_agents(session: Session, department: Optional[ChatDepartment] = None) -> List[ChatAgentStatus]:
    """
    Агенты онлайн с включенным автоназначением, обслуживающие отдел и не достигшие лимита чатов.

    Отсортированы по возрастанию текущей нагрузки.
    """
    statement = (
        select(ChatAgentStatus)
        .where(
            ChatAgentStatus.status == AgentPresence.ONLINE.value,
            ChatAgentStatus.auto_assign_enabled == True,  # noqa: E712
            col(ChatAgentStatus.active_chats_count) < col(ChatAgentStatus.max_active_chats),
        )
        .order_by(col(ChatAgentStatus.active_chats_count).asc(), col(ChatAgentStatus.user_id).asc())
    )
    agents = session.exec(statement).all()

    if department is not None:
        department = ChatDepartment(department).value
        agents = [agent for agent in agents if department in (agent.departments or [])]
    return list(agents)


def find_available_agent(session: Session, department: Optional[ChatDepartment] = None) -> Optional[ChatAgentStatus]:
    """Наименее загруженный доступный агент или None."""
    agents = get_available_agents(session, department)
    if not agents:
        logging.warning(f"No available agents found for department {department or 'any'}.")
        return None
    return agents[0]


def adjust_active_chats(session: Session, user_id: Optional[int], delta: int) -> None:
    """Меняет счетчик активных чатов агента. Коммит остается за вызывающим кодом."""
    if user_id is None:
        return
    agent_status = session.get(ChatAgentStatus, user_id)
    if agent_status is None:
        return
    agent_status.active_chats_count = max(0, agent_status.active_chats_count + delta)
    session.add(agent_status)


async def broadcast_typing(session: Session, channel_id: int, user_id: int, is_typing: bool) -> None:
    """
    Пересылает индикатор набора текста остальным участникам канала.

    Для неизвестного канала или пользователя ничего не делает.
    """
    channel = session.get(ChatChannel, channel_id)
    if not channel:
        return

    user = session.get(User, user_id)
    if not user:
        return

    memberships = session.exec(
        select(ChatChannelAgent).where(
            ChatChannelAgent.channel_id == channel_id, ChatChannelAgent.user_id == user_id
        )
    ).all()
    for membership in memberships:
        membership.last_typing_at = utcnow() if is_typing else None
        session.add(membership)
    session.commit()

    targets = channel_participants(session, channel)
    targets.discard(user_id)

    realtime.emit_chat_typing(
        realtime.ChatTypingEvent(
            channel_id=channel_id, user_id=user_id, user_name=user.full_name, is_typing=is_typing
        ),
        sorted(targets),
    )
