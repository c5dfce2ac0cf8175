"""ConnectWise プロジェクト同期

projects: 許可メンバーがマネージャーのプロジェクト
project_tickets: ローカルに存在するプロジェクトに属するチケットのみ
"""

from datetime import datetime

from dashboard_sync.lib.logger import setup_logger
from dashboard_sync.services.connectwise.audit import AUDITED_STATUSES, capture_audits
from dashboard_sync.services.connectwise.context import HandlerResult, SyncContext
from dashboard_sync.services.connectwise.models import to_db_project, to_db_project_ticket

logger = setup_logger(__name__)


async def sync_projects(ctx: SyncContext, modified_since: datetime | None = None) -> HandlerResult:
    """プロジェクトを同期し、クローズ系ステータスのものは監査ログを取得"""
    allowed = ctx.allowed_identifiers
    if not allowed:
        logger.warning("No allowed identifiers configured, skipping projects")
        return HandlerResult(count=0, affected_ids=[])

    projects = await ctx.client.get_projects(sorted(allowed), modified_since=modified_since)

    project_ids: list[int] = []
    audit_ids: list[int] = []
    for project in projects:
        record = to_db_project(project)
        if record is None:
            continue
        if (record["manager_identifier"] or "").lower() not in allowed:
            continue
        ctx.store.upsert("projects", record)
        project_ids.append(record["id"])
        if record["status"] in AUDITED_STATUSES:
            audit_ids.append(record["id"])

    logger.info(f"Synced {len(project_ids)} projects managed by allowed members")

    if audit_ids:
        logger.info(f"Capturing audit trails for {len(audit_ids)} closed/ready-to-close projects")
        appended = await capture_audits(ctx.client, ctx.store, "Project", audit_ids)
        logger.info(f"Appended {appended} project audit rows")

    return HandlerResult(count=len(project_ids), affected_ids=project_ids)


async def sync_project_tickets(
    ctx: SyncContext, modified_since: datetime | None = None
) -> HandlerResult:
    """既知プロジェクトのチケットを同期（プロジェクトが無ければ取得しない）"""
    known_projects = {row["id"] for row in ctx.store.find_many("projects")}
    if not known_projects:
        logger.info("No projects stored, skipping project tickets")
        return HandlerResult(count=0, affected_ids=[])

    tickets = await ctx.client.get_project_tickets(modified_since=modified_since)

    ticket_ids: list[int] = []
    for ticket in tickets:
        record = to_db_project_ticket(ticket)
        if record is None or record["project_id"] not in known_projects:
            continue
        ctx.store.upsert("project_tickets", record)
        ticket_ids.append(record["id"])

    logger.info(
        f"Filtered {len(tickets)} project tickets to {len(ticket_ids)} for known projects"
    )
    return HandlerResult(count=len(ticket_ids), affected_ids=ticket_ids)
