"""ConnectWise レスポンス → ローカルDB行 の変換

外部APIのスキーマ揺れ（ネストした参照が dict だったり文字列だったりする等）を
ここで吸収する。必須フィールドが欠けたレコードは None を返し、呼び出し側で
スキップする（null を DB まで流さない）。
"""

import re
from datetime import datetime, timezone
from typing import Any, TypedDict

from dashboard_sync.lib.logger import setup_logger

logger = setup_logger(__name__)

BOARD_TYPE_MS = "MS"
BOARD_TYPE_PS = "PS"
BILLABLE_OPTION = "Billable"

# 監査ログ本文の 'Status changed from "X" to "Y"' 形式
_STATUS_CHANGE_PATTERN = re.compile(r'from\s+"([^"]*)"\s+to\s+"([^"]*)"', re.IGNORECASE)


# =============================================================================
# Types: DB rows
# =============================================================================


class DbMember(TypedDict):
    """members テーブルレコード"""
    id: int
    identifier: str
    first_name: str | None
    last_name: str | None
    email: str | None
    inactive_flag: bool


class DbBoard(TypedDict):
    """boards テーブルレコード"""
    id: int
    name: str
    type: str  # MS | PS


class DbServiceBoard(TypedDict):
    """service_boards テーブルレコード"""
    board_id: int
    name: str


class DbTicket(TypedDict):
    """tickets テーブルレコード"""
    id: int
    summary: str | None
    board_id: int
    status: str | None
    owner: str | None
    company: str | None
    type: str | None
    priority: str | None
    resources: str | None
    date_entered: datetime | None
    resolved_date: datetime | None
    closed_date: datetime | None
    closed_flag: bool
    estimated_hours: float | None
    actual_hours: float | None


class DbTimeEntry(TypedDict):
    """time_entries テーブルレコード"""
    id: int
    member_id: int
    ticket_id: int | None
    hours: float
    billable_option: str | None
    billable: bool
    notes: str | None
    internal_notes: str | None
    date_start: datetime
    date_end: datetime | None


class DbProject(TypedDict):
    """projects テーブルレコード"""
    id: int
    name: str | None
    status: str | None
    company: str | None
    manager_identifier: str | None
    manager_name: str | None
    board_name: str | None
    type: str | None
    estimated_start: datetime | None
    estimated_end: datetime | None
    actual_start: datetime | None
    actual_end: datetime | None
    estimated_hours: float | None
    actual_hours: float | None
    percent_complete: float | None
    closed_flag: bool
    description: str | None


class DbProjectTicket(TypedDict):
    """project_tickets テーブルレコード"""
    id: int
    summary: str | None
    project_id: int
    project_name: str | None
    phase_id: int | None
    phase_name: str | None
    board_id: int | None
    board_name: str | None
    status: str | None
    company: str | None
    resources: str | None
    closed_flag: bool
    priority: str | None
    type: str | None
    wbs_code: str | None
    budget_hours: float | None
    actual_hours: float | None
    date_entered: datetime | None
    closed_date: datetime | None


class DbProjectAudit(TypedDict):
    """project_audits テーブルレコード（id は自動採番）"""
    project_id: int
    status: str | None
    previous_status: str | None
    changed_by: str | None
    date_entered: datetime
    message: str | None


# =============================================================================
# Field helpers
# =============================================================================


def to_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_datetime(value: Any) -> datetime | None:
    """ISO8601（末尾Z含む）を timezone 付き datetime に変換"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unable to parse datetime: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def ref_id(value: Any) -> int | None:
    """{"id": 1, ...} または 1 から id を取り出す"""
    if isinstance(value, dict):
        return to_int(value.get("id"))
    return to_int(value)


def ref_name(value: Any) -> str | None:
    """{"name": "X"} または "X" から名前を取り出す"""
    if isinstance(value, dict):
        return to_text(value.get("name"))
    return to_text(value)


def ref_identifier(value: Any) -> str | None:
    """{"identifier": "x"} または "x" から識別子を取り出す"""
    if isinstance(value, dict):
        return to_text(value.get("identifier"))
    return to_text(value)


def split_resources(resources: str | None) -> list[str]:
    """resources 文字列（"bwolff, kmoreno"）を小文字の識別子リストに分解"""
    if not resources:
        return []
    return [r.strip().lower() for r in re.split(r"[,;]", resources) if r.strip()]


def classify_board_type(name: str | None) -> str:
    """ボード名に MS を含めば MS、それ以外は PS"""
    return BOARD_TYPE_MS if name and BOARD_TYPE_MS in name else BOARD_TYPE_PS


# =============================================================================
# API → DB transformation
# =============================================================================


def to_db_member(member: dict[str, Any]) -> DbMember | None:
    """API Member → DB Member"""
    member_id = to_int(member.get("id"))
    identifier = to_text(member.get("identifier"))
    if member_id is None or identifier is None:
        logger.warning(f"Skipping member without id/identifier: {member.get('id')!r}")
        return None

    return DbMember(
        id=member_id,
        identifier=identifier,
        first_name=to_text(member.get("firstName")),
        last_name=to_text(member.get("lastName")),
        email=to_text(member.get("emailAddress")),
        inactive_flag=bool(member.get("inactiveFlag") or False),
    )


def to_db_board(board: dict[str, Any]) -> DbBoard | None:
    """API Board → DB Board"""
    board_id = to_int(board.get("id"))
    if board_id is None:
        logger.warning(f"Skipping board without id: {board!r}")
        return None

    name = to_text(board.get("name")) or f"Board {board_id}"
    return DbBoard(id=board_id, name=name, type=classify_board_type(name))


def to_db_ticket(ticket: dict[str, Any]) -> DbTicket | None:
    """API Ticket → DB Ticket

    board が無いチケットは保存できないためスキップ。
    """
    ticket_id = to_int(ticket.get("id"))
    board_id = ref_id(ticket.get("board")) or to_int(ticket.get("boardId"))
    if ticket_id is None or board_id is None:
        logger.warning(f"Skipping ticket without id/board: {ticket.get('id')!r}")
        return None

    resources = ref_identifier(ticket.get("teamMember")) or to_text(ticket.get("resources"))

    return DbTicket(
        id=ticket_id,
        summary=to_text(ticket.get("summary")),
        board_id=board_id,
        status=ref_name(ticket.get("status")),
        owner=ref_identifier(ticket.get("owner")),
        company=ref_name(ticket.get("company")),
        type=ref_name(ticket.get("type")),
        priority=ref_name(ticket.get("priority")),
        resources=resources,
        date_entered=parse_datetime(ticket.get("dateEntered")),
        resolved_date=parse_datetime(ticket.get("resolvedDate")),
        closed_date=parse_datetime(ticket.get("closedDate")),
        closed_flag=bool(ticket.get("closedFlag") or False),
        estimated_hours=to_float(ticket.get("estimatedHours")),
        actual_hours=to_float(ticket.get("actualHours")),
    )


def to_db_time_entry(entry: dict[str, Any]) -> DbTimeEntry | None:
    """API Time Entry → DB Time Entry

    member と timeStart は必須。hours が無い場合は actualHours、それも無ければ 0。
    """
    entry_id = to_int(entry.get("id"))
    member_id = ref_id(entry.get("member")) or to_int(entry.get("memberId"))
    date_start = parse_datetime(entry.get("timeStart"))
    if entry_id is None or member_id is None or date_start is None:
        logger.warning(f"Skipping time entry without id/member/timeStart: {entry.get('id')!r}")
        return None

    hours = to_float(entry.get("hours"))
    if hours is None:
        hours = to_float(entry.get("actualHours")) or 0.0
    billable_option = to_text(entry.get("billableOption"))

    return DbTimeEntry(
        id=entry_id,
        member_id=member_id,
        ticket_id=ref_id(entry.get("ticket")) or to_int(entry.get("ticketId")),
        hours=hours,
        billable_option=billable_option,
        billable=billable_option == BILLABLE_OPTION,
        notes=to_text(entry.get("notes")),
        internal_notes=to_text(entry.get("internalNotes")),
        date_start=date_start,
        date_end=parse_datetime(entry.get("timeEnd")),
    )


def to_db_project(project: dict[str, Any]) -> DbProject | None:
    """API Project → DB Project"""
    project_id = to_int(project.get("id"))
    if project_id is None:
        logger.warning(f"Skipping project without id: {project!r}")
        return None

    manager = project.get("manager")
    manager_name = to_text(manager.get("name")) if isinstance(manager, dict) else None

    return DbProject(
        id=project_id,
        name=to_text(project.get("name")),
        status=ref_name(project.get("status")),
        company=ref_name(project.get("company")),
        manager_identifier=ref_identifier(manager),
        manager_name=manager_name,
        board_name=ref_name(project.get("board")),
        type=ref_name(project.get("type")),
        estimated_start=parse_datetime(project.get("estimatedStart")),
        estimated_end=parse_datetime(project.get("estimatedEnd")),
        actual_start=parse_datetime(project.get("actualStart")),
        actual_end=parse_datetime(project.get("actualEnd")),
        estimated_hours=to_float(project.get("estimatedHours")),
        actual_hours=to_float(project.get("actualHours")),
        percent_complete=to_float(project.get("percentComplete")),
        closed_flag=bool(project.get("closedFlag") or False),
        description=to_text(project.get("description")),
    )


def to_db_project_ticket(ticket: dict[str, Any]) -> DbProjectTicket | None:
    """API Project Ticket → DB Project Ticket"""
    ticket_id = to_int(ticket.get("id"))
    project_id = ref_id(ticket.get("project"))
    if ticket_id is None or project_id is None:
        logger.warning(f"Skipping project ticket without id/project: {ticket.get('id')!r}")
        return None

    project = ticket.get("project")
    phase = ticket.get("phase")
    board = ticket.get("board")

    return DbProjectTicket(
        id=ticket_id,
        summary=to_text(ticket.get("summary")),
        project_id=project_id,
        project_name=ref_name(project) if isinstance(project, dict) else None,
        phase_id=ref_id(phase),
        phase_name=ref_name(phase) if isinstance(phase, dict) else None,
        board_id=ref_id(board),
        board_name=ref_name(board) if isinstance(board, dict) else None,
        status=ref_name(ticket.get("status")),
        company=ref_name(ticket.get("company")),
        resources=to_text(ticket.get("resources")),
        closed_flag=bool(ticket.get("closedFlag") or False),
        priority=ref_name(ticket.get("priority")),
        type=ref_name(ticket.get("type")),
        wbs_code=to_text(ticket.get("wbsCode")),
        budget_hours=to_float(ticket.get("budgetHours")),
        actual_hours=to_float(ticket.get("actualHours")),
        date_entered=parse_datetime(ticket.get("dateEntered")),
        closed_date=parse_datetime(ticket.get("closedDate")),
    )


def parse_status_change(text: str | None) -> tuple[str | None, str | None]:
    """'from "X" to "Y"' から (旧ステータス, 新ステータス) を取り出す"""
    if not text:
        return None, None
    match = _STATUS_CHANGE_PATTERN.search(text)
    if not match:
        return None, None
    return to_text(match.group(1)), to_text(match.group(2))


def to_db_project_audit(project_id: int, audit: dict[str, Any]) -> DbProjectAudit | None:
    """API Audit Trail → DB Project Audit

    newValue / oldValue が無い場合は本文の 'from "X" to "Y"' から補完する。
    タイムスタンプが無いイベントはスキップ。
    """
    date_entered = parse_datetime(audit.get("dateEntered") or audit.get("enteredDate"))
    if date_entered is None:
        logger.warning(f"Skipping audit event without timestamp for project {project_id}")
        return None

    message = to_text(audit.get("message")) or to_text(audit.get("text"))
    parsed_old, parsed_new = parse_status_change(message)

    changed_by = audit.get("enteredBy")
    if isinstance(changed_by, dict):
        changed_by = changed_by.get("identifier") or changed_by.get("name")

    return DbProjectAudit(
        project_id=project_id,
        status=to_text(audit.get("newValue")) or parsed_new,
        previous_status=to_text(audit.get("oldValue")) or parsed_old,
        changed_by=to_text(changed_by),
        date_entered=date_entered,
        message=message,
    )
