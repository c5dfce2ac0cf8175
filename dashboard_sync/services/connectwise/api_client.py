"""ConnectWise Manage API クライアント（読み取り専用）

REST API v3.0 への認証・HTTPリクエスト・ページネーションを担当。
データ取得のみを行い、DB操作は行わない。

リトライポリシー:
- 5xx: 1回だけリトライ
- 429 を含むその他の非2xx: 即座に ConnectWiseAPIError
  （インクリメンタル同期のフォールバック判定は呼び出し側で行う）
"""

import asyncio
import base64
from datetime import datetime, timezone
from typing import Any, TypedDict
from urllib.parse import urlparse

import httpx

from dashboard_sync.lib.config import ConnectWiseConfig
from dashboard_sync.lib.logger import setup_logger

logger = setup_logger(__name__)

# =============================================================================
# Configuration
# =============================================================================

API_PATH = "apis/3.0"
DEFAULT_CODEBASE = "v4_6_release/"
CODEBASE_DETECT_TIMEOUT_SEC = 5.0
REQUEST_TIMEOUT_SEC = 60.0
MAX_PAGE_SIZE = 1000
DEFAULT_RETRY_DELAY_SEC = 1
ERROR_BODY_MAX_CHARS = 200

MEMBER_FIELDS = "id,identifier,firstName,lastName,emailAddress,inactiveFlag"
BOARD_FIELDS = "id,name"
TICKET_FIELDS = (
    "id,summary,board/id,status/name,closedDate,closedFlag,dateEntered,resolvedDate,"
    "type/name,priority/name,owner/identifier,company/name,estimatedHours,actualHours,"
    "team/id,teamMember/identifier,resources,"
    "_info/dateEntered,_info/dateResolved,_info/closedDate"
)
TIME_ENTRY_FIELDS = (
    "id,member/id,ticket/id,hours,actualHours,billableOption,notes,internalNotes,"
    "timeStart,timeEnd"
)
PROJECT_FIELDS = (
    "id,name,status/name,company/name,manager/identifier,manager/name,board/name,"
    "estimatedStart,estimatedEnd,actualStart,actualEnd,actualHours,estimatedHours,"
    "percentComplete,type/name,closedFlag,description"
)
PROJECT_TICKET_FIELDS = (
    "id,summary,project/id,project/name,phase/id,phase/name,board/id,board/name,"
    "status/name,company/name,resources,closedFlag,priority/name,type/name,wbsCode,"
    "actualHours,budgetHours,dateEntered,closedDate,_info/dateEntered,_info/closedDate"
)


# =============================================================================
# Types
# =============================================================================

class RequestOptions(TypedDict, total=False):
    """リクエストオプション"""
    conditions: str | None
    order_by: str
    fields: str  # 部分レスポンス（ペイロード削減）


class ConnectWiseAPIError(Exception):
    """ConnectWise API のエラーレスポンス

    Attributes:
        status_code: HTTPステータス（レスポンス形式エラーの場合は None）
        body: レスポンス本文（先頭200文字まで）
        endpoint: リクエストしたエンドポイント
    """

    def __init__(self, status_code: int | None, body: str, endpoint: str):
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint
        status = status_code if status_code is not None else "n/a"
        super().__init__(f"ConnectWise API error ({status}) on {endpoint}: {body}")


# =============================================================================
# Helpers
# =============================================================================

def format_cw_datetime(value: datetime) -> str:
    """ConnectWise の条件式用に UTC の ISO8601 文字列へ変換"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def join_conditions(*conditions: str | None) -> str | None:
    """空でない条件を AND で連結"""
    parts = [c for c in conditions if c]
    return " AND ".join(parts) if parts else None


def modified_since_condition(modified_since: datetime) -> str:
    return f"_info/lastUpdated > [{format_cw_datetime(modified_since)}]"


def build_auth_headers(config: ConnectWiseConfig) -> dict[str, str]:
    """全リクエスト共通の認証ヘッダーを生成

    Basic認証: {companyId}+{publicKey}:{privateKey} をBase64エンコード
    """
    auth_string = f"{config.company_id}+{config.public_key}:{config.private_key}"
    encoded = base64.b64encode(auth_string.encode()).decode()
    return {
        "Authorization": f"Basic {encoded}",
        "Accept": "application/vnd.connectwise.com+json",
        "Content-Type": "application/json",
        "clientId": config.client_id,
    }


def _with_trailing_slash(codebase: str) -> str:
    return codebase if codebase.endswith("/") else f"{codebase}/"


def _error_text(response: httpx.Response) -> str:
    """エラーレスポンスから本文を抽出（JSONなら message を優先）"""
    text = response.text or response.reason_phrase or ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        text = str(payload.get("message") or payload.get("error") or text)
    if len(text) > ERROR_BODY_MAX_CHARS:
        text = text[:ERROR_BODY_MAX_CHARS] + "..."
    return text


# =============================================================================
# Client
# =============================================================================

class ConnectWiseClient:
    """ConnectWise Manage API クライアント

    async with で使用する（httpx.AsyncClient を1つ保持して使い回す）。

        async with ConnectWiseClient(config.connectwise) as client:
            members = await client.get_members()
    """

    retry_delay: float = DEFAULT_RETRY_DELAY_SEC

    def __init__(
        self,
        config: ConnectWiseConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        required = (
            config.client_id, config.public_key, config.private_key,
            config.base_url, config.company_id,
        )
        if not all(required):
            raise ValueError(
                "All ConnectWise config fields are required: "
                "client_id, public_key, private_key, base_url, company_id"
            )

        self.config = config
        self.headers = build_auth_headers(config)
        self._client = http_client
        self._owns_client = http_client is None
        self._codebase = _with_trailing_slash(config.codebase) if config.codebase else None

    async def __aenter__(self) -> "ConnectWiseClient":
        self._http()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SEC)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Codebase
    # -------------------------------------------------------------------------

    async def get_codebase(self) -> str:
        """APIパスのコードベース（例: v2024_1/）を取得（キャッシュ付き）

        CW_CODEBASE 未設定時は companyinfo エンドポイントから検出し、
        失敗した場合は v4_6_release/ を使う。
        """
        if self._codebase is not None:
            return self._codebase

        site = urlparse(self.config.base_url).netloc or self.config.base_url
        if site.startswith("api-"):
            site = site[len("api-"):]
        url = f"https://{site}/login/companyinfo/{self.config.company_id}"

        codebase = DEFAULT_CODEBASE
        try:
            response = await self._http().get(url, timeout=CODEBASE_DETECT_TIMEOUT_SEC)
            if response.status_code == 200:
                codebase = response.json().get("Codebase") or DEFAULT_CODEBASE
                logger.info(f"Detected ConnectWise codebase: {codebase}")
            else:
                logger.warning(
                    f"Codebase detection failed with status {response.status_code}, "
                    f"using {DEFAULT_CODEBASE}"
                )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Codebase detection failed ({e}), using {DEFAULT_CODEBASE}")

        self._codebase = _with_trailing_slash(codebase)
        return self._codebase

    # -------------------------------------------------------------------------
    # Low-level requests
    # -------------------------------------------------------------------------

    async def _request(self, endpoint: str, params: dict[str, Any]) -> Any:
        """GETリクエスト（5xxは1回だけリトライ）

        Raises:
            ConnectWiseAPIError: 非2xxレスポンス
            httpx.TransportError: ネットワークエラー
        """
        codebase = await self.get_codebase()
        url = f"{self.config.base_url}/{codebase}{API_PATH}{endpoint}"
        server_error_retried = False

        while True:
            response = await self._http().get(url, params=params, headers=self.headers)

            if 200 <= response.status_code < 300:
                try:
                    return response.json()
                except ValueError:
                    raise ConnectWiseAPIError(
                        response.status_code, "Response body is not valid JSON", endpoint
                    ) from None

            # サーバーエラー (5xx) - 1回だけリトライ
            if 500 <= response.status_code < 600 and not server_error_retried:
                server_error_retried = True
                logger.warning(
                    f"Server error ({response.status_code}) on {endpoint}. Retrying once..."
                )
                await asyncio.sleep(self.retry_delay)
                continue

            error = ConnectWiseAPIError(response.status_code, _error_text(response), endpoint)
            logger.error(str(error))
            raise error

    async def fetch_page(
        self,
        endpoint: str,
        options: RequestOptions | None = None,
        page: int = 1,
        page_size: int = MAX_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """1ページ分を取得"""
        options = options or {}
        params: dict[str, Any] = {"page": page, "pageSize": min(page_size, MAX_PAGE_SIZE)}
        if options.get("conditions"):
            params["conditions"] = options["conditions"]
        if options.get("order_by"):
            params["orderBy"] = options["order_by"]
        if options.get("fields"):
            params["fields"] = options["fields"]

        data = await self._request(endpoint, params)
        if not isinstance(data, list):
            raise ConnectWiseAPIError(None, "Unexpected response format (expected a list)", endpoint)
        return data

    async def fetch_all(
        self,
        endpoint: str,
        options: RequestOptions | None = None,
        modified_since: datetime | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """全ページを取得（ページネーション対応）

        ページサイズ未満のページが返るまで取得を続ける。

        Args:
            endpoint: エンドポイント（例: /service/tickets）
            options: 条件・並び順・フィールド
            modified_since: 指定時は「この時刻以降に更新されたもの」のみ取得

        Returns:
            全レコードのリスト
        """
        options = RequestOptions(**(options or {}))
        page_size = min(page_size, MAX_PAGE_SIZE)
        if modified_since is not None:
            options["conditions"] = join_conditions(
                options.get("conditions"), modified_since_condition(modified_since)
            )
            logger.info(
                f"Incremental fetch: {endpoint} modified since "
                f"{format_cw_datetime(modified_since)}"
            )

        all_records: list[dict[str, Any]] = []
        page = 1

        while True:
            records = await self.fetch_page(endpoint, options, page=page, page_size=page_size)
            all_records.extend(records)
            logger.debug(f"{endpoint} page {page}: {len(records)} records (total: {len(all_records)})")

            if len(records) < page_size:
                break
            page += 1

        logger.info(f"Fetched {len(all_records)} records from {endpoint} ({page} pages)")
        return all_records

    # -------------------------------------------------------------------------
    # Typed fetches
    # -------------------------------------------------------------------------

    async def get_members(self, include_inactive: bool = False) -> list[dict[str, Any]]:
        """メンバー一覧を取得（既定はアクティブのみ）"""
        return await self.fetch_all(
            "/system/members",
            RequestOptions(
                conditions=None if include_inactive else "inactiveFlag=false",
                order_by="identifier asc",
                fields=MEMBER_FIELDS,
            ),
        )

    async def get_boards(self) -> list[dict[str, Any]]:
        """サービスボード一覧を取得"""
        return await self.fetch_all("/service/boards", RequestOptions(fields=BOARD_FIELDS))

    async def get_tickets(
        self,
        board_ids: list[int],
        member_identifiers: list[str] | None = None,
        modified_since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """サービスチケットを取得

        Args:
            board_ids: 対象ボードID
            member_identifiers: 指定時は owner / resources でサーバー側絞り込み
            modified_since: インクリメンタル同期の基準時刻
        """
        board_condition = f"board/id IN ({','.join(str(i) for i in board_ids)})" if board_ids else None

        member_condition = None
        if member_identifiers:
            parts = []
            for identifier in member_identifiers:
                parts.append(f'owner/identifier="{identifier}"')
                parts.append(f'resources like "%{identifier}%"')
            member_condition = f"({' OR '.join(parts)})"

        return await self.fetch_all(
            "/service/tickets",
            RequestOptions(
                conditions=join_conditions(board_condition, member_condition),
                order_by="dateEntered desc",
                fields=TICKET_FIELDS,
            ),
            modified_since=modified_since,
        )

    async def get_time_entries(
        self,
        member_ids: list[int],
        modified_since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """指定メンバーの時間エントリーを取得"""
        member_condition = (
            f"member/id IN ({','.join(str(i) for i in member_ids)})" if member_ids else None
        )
        return await self.fetch_all(
            "/time/entries",
            RequestOptions(
                conditions=member_condition,
                order_by="timeStart desc",
                fields=TIME_ENTRY_FIELDS,
            ),
            modified_since=modified_since,
        )

    async def get_projects(
        self,
        manager_identifiers: list[str],
        modified_since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """指定マネージャーのプロジェクトを取得"""
        manager_condition = None
        if manager_identifiers:
            managers = " OR ".join(f"manager/identifier='{i}'" for i in manager_identifiers)
            manager_condition = f"({managers})"

        return await self.fetch_all(
            "/project/projects",
            RequestOptions(
                conditions=manager_condition,
                order_by="id desc",
                fields=PROJECT_FIELDS,
            ),
            modified_since=modified_since,
        )

    async def get_project_tickets(
        self,
        project_id: int | None = None,
        modified_since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """プロジェクトチケットを取得（/project/tickets）"""
        return await self.fetch_all(
            "/project/tickets",
            RequestOptions(
                conditions=f"project/id={project_id}" if project_id else None,
                order_by="id desc",
                fields=PROJECT_TICKET_FIELDS,
            ),
            modified_since=modified_since,
        )

    async def get_audit_trail(self, record_type: str, record_id: int) -> list[dict[str, Any]]:
        """レコードの変更履歴を取得（誰がいつステータスを変えたか）"""
        return await self.fetch_all(
            "/system/auditTrail",
            RequestOptions(
                conditions=f'type="{record_type}" AND id={record_id}',
                order_by="dateEntered desc",
            ),
        )

    async def get_time_entry_bounds(self, member_id: int) -> tuple[str | None, str | None]:
        """メンバーの最初・最後の時間エントリーの timeStart を取得"""
        bounds: list[str | None] = []
        for order in ("asc", "desc"):
            records = await self.fetch_page(
                "/time/entries",
                RequestOptions(
                    conditions=f"member/id={member_id}",
                    order_by=f"timeStart {order}",
                    fields="timeStart",
                ),
                page_size=1,
            )
            bounds.append(records[0].get("timeStart") if records else None)
        return bounds[0], bounds[1]
