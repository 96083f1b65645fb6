"""
Prompt construction and template substitution (pt-BR).

Dates are rendered in the company timezone; stored datetimes are naive UTC.
"""

import re
from datetime import datetime, timedelta
from typing import Optional, Union

import pytz

from followup.context import FollowUpContext, ReminderContext

FOLLOW_UP_MAX_CHARS = 150
REMINDER_MAX_CHARS = 200
HISTORY_EXCERPT_SIZE = 3
DEFAULT_TONE = "profissional"
DEFAULT_FOLLOW_UP_NAME = "usuário"
DEFAULT_REMINDER_NAME = "Cliente"
DEFAULT_LOCATION = "a definir"
DEFAULT_FOLLOW_UP_TEMPLATE = "Olá {nome}, ainda posso ajudar com alguma coisa?"
DEFAULT_REMINDER_TEMPLATE = "Olá {nome}, lembrete: {appointment_title} em {data} às {horario}."

WEEKDAYS_PT = [
    "segunda-feira", "terça-feira", "quarta-feira", "quinta-feira",
    "sexta-feira", "sábado", "domingo",
]
MONTHS_PT = [
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
]

REMINDER_TYPE_LABELS = {
    "day_before": "lembrete de véspera",
    "hours_before": "lembrete com algumas horas de antecedência",
    "minutes_before": "lembrete de última hora",
    "confirmation": "pedido de confirmação",
}


def to_local(value: datetime, tz_name: str) -> datetime:
    """Convert a naive UTC datetime into the given IANA timezone."""
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        tz = pytz.utc
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(tz)


def format_date(value: datetime, tz_name: str) -> str:
    return to_local(value, tz_name).strftime("%d/%m/%Y")


def format_time(value: datetime, tz_name: str) -> str:
    return to_local(value, tz_name).strftime("%H:%M")


def format_long_date(value: datetime, tz_name: str) -> str:
    """e.g. 'sábado, 1 de junho de 2024'"""
    local = to_local(value, tz_name)
    return f"{WEEKDAYS_PT[local.weekday()]}, {local.day} de {MONTHS_PT[local.month - 1]} de {local.year}"


def format_duration(delta: Optional[timedelta]) -> str:
    """'2h 5min', '12min 30s' or '45s'."""
    if delta is None:
        return "tempo desconhecido"
    total = max(int(delta.total_seconds()), 0)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}min"
    if minutes:
        return f"{minutes}min {seconds}s"
    return f"{seconds}s"


def render_template(template: str, context: Union[FollowUpContext, ReminderContext]) -> str:
    """
    Pure placeholder substitution. Cannot fail.

    {nome} always; {appointment_title}, {data}, {horario} and {local} for
    reminders.
    """
    text = template or ""

    if isinstance(context, ReminderContext):
        name = context.contact_name or DEFAULT_REMINDER_NAME
        replacements = {
            "{nome}": name,
            "{appointment_title}": context.appointment_title or "",
            "{data}": format_date(context.start_time, context.timezone),
            "{horario}": format_time(context.start_time, context.timezone),
            "{local}": context.location or DEFAULT_LOCATION,
        }
    else:
        name = (context.contact_name if context else None) or DEFAULT_FOLLOW_UP_NAME
        replacements = {"{nome}": name}

    for token, value in replacements.items():
        text = text.replace(token, value)
    return text


def clean_response(text: Optional[str]) -> str:
    """Strip whitespace and wrapping quotes the model sometimes adds."""
    if not text:
        return ""
    cleaned = text.strip()
    cleaned = re.sub(r'^["“”\']+|["“”\']+$', "", cleaned)
    return cleaned.strip()


def _history_excerpt(context: FollowUpContext) -> str:
    lines = []
    for msg in context.messages[-HISTORY_EXCERPT_SIZE:]:
        speaker = "Agente" if msg.sent_by_ai else (context.contact_name or "Contato")
        lines.append(f"{speaker}: {msg.content}")
    return "\n".join(lines) if lines else "(sem mensagens anteriores)"


def build_follow_up_instruction(template: str, context: FollowUpContext, now: Optional[datetime] = None) -> str:
    """Instruction message appended to the conversation thread for a follow-up."""
    elapsed = format_duration(context.time_since_last_message(now))
    return (
        "FOLLOW-UP AUTOMÁTICO: Você precisa reativar esta conversa que parou de responder.\n\n"
        f"TEMPLATE ORIGINAL: \"{template}\"\n\n"
        "CONTEXTO ATUAL:\n"
        f"- Nome: {context.contact_name or 'Não informado'}\n"
        f"- Última interação: {elapsed} atrás\n"
        f"- Últimas mensagens:\n{_history_excerpt(context)}\n\n"
        "INSTRUÇÃO: Reescreva o template de forma personalizada para reativar a conversa. "
        "Não cumprimente novamente, pois é uma continuação. "
        "Mencione a conversa anterior se for relevante. "
        f"Seja natural e use no máximo {FOLLOW_UP_MAX_CHARS} caracteres. "
        "Responda APENAS com a mensagem reescrita, sem explicações."
    )


def build_follow_up_system_prompt(agent, context: FollowUpContext, now: Optional[datetime] = None) -> str:
    today = format_long_date(now or datetime.utcnow(), context.timezone)
    name = getattr(agent, "name", None) or "Assistente"
    tone = getattr(agent, "tone", None) or DEFAULT_TONE
    return (
        f"Você é {name}, um assistente especializado em follow-up de vendas.\n"
        f"Hoje é {today}.\n\n"
        "Seu papel é reativar conversas que pararam de responder, de forma natural e sem pressão.\n"
        f"- Tom: {tone}\n"
        f"- Máximo de {FOLLOW_UP_MAX_CHARS} caracteres\n"
        "- Use emojis com moderação\n"
        "- Nunca cumprimente como se fosse a primeira mensagem\n\n"
        f"CONTATO: {context.contact_name or 'Não informado'}\n"
        f"TELEFONE: {context.contact_phone or 'Não informado'}"
    )


def _reminder_facts(context: ReminderContext) -> str:
    reminder_label = REMINDER_TYPE_LABELS.get(context.reminder_type or "", context.reminder_type or "lembrete")
    lines = [
        f"- Contato: {context.contact_name or DEFAULT_REMINDER_NAME}",
        f"- Compromisso: {context.appointment_title}",
        f"- Data: {format_date(context.start_time, context.timezone)}",
        f"- Horário: {format_time(context.start_time, context.timezone)}",
        f"- Local: {context.location or 'Não especificado'}",
        f"- Tipo de lembrete: {reminder_label}",
    ]
    if context.minutes_before:
        lines.append(f"- Antecedência: {format_duration(timedelta(minutes=context.minutes_before))}")
    return "\n".join(lines)


def build_reminder_instruction(template: str, context: ReminderContext) -> str:
    """Instruction message for an appointment reminder."""
    return (
        "LEMBRETE DE COMPROMISSO AUTOMÁTICO: Você precisa lembrar o contato de um compromisso agendado.\n\n"
        f"TEMPLATE ORIGINAL: \"{template}\"\n\n"
        f"DADOS DO COMPROMISSO:\n{_reminder_facts(context)}\n\n"
        "INSTRUÇÃO: Reescreva o template de forma personalizada. "
        "Inclua o título do compromisso, a data e o horário"
        f"{', e o local' if context.location else ''}. "
        f"Use no máximo {REMINDER_MAX_CHARS} caracteres. "
        "Responda APENAS com a mensagem reescrita, sem explicações."
    )


def build_reminder_system_prompt(agent, context: ReminderContext, now: Optional[datetime] = None) -> str:
    today = format_long_date(now or datetime.utcnow(), context.timezone)
    name = getattr(agent, "name", None) or "Assistente"
    tone = getattr(agent, "tone", None) or DEFAULT_TONE
    return (
        f"Você é {name}, um assistente responsável por lembretes de compromissos.\n"
        f"Hoje é {today}.\n\n"
        "Seu papel é lembrar o contato do compromisso com clareza e cordialidade.\n"
        f"- Tom: {tone}\n"
        f"- Máximo de {REMINDER_MAX_CHARS} caracteres\n"
        "- Use emojis com moderação\n\n"
        f"CONTATO: {context.contact_name or DEFAULT_REMINDER_NAME}\n"
        f"TELEFONE: {context.contact_phone or 'Não informado'}"
    )


def build_instruction(template: str, context: Union[FollowUpContext, ReminderContext], now: Optional[datetime] = None) -> str:
    if isinstance(context, ReminderContext):
        return build_reminder_instruction(template, context)
    return build_follow_up_instruction(template, context, now)


def build_system_prompt(agent, context: Union[FollowUpContext, ReminderContext], now: Optional[datetime] = None) -> str:
    if isinstance(context, ReminderContext):
        return build_reminder_system_prompt(agent, context, now)
    return build_follow_up_system_prompt(agent, context, now)
