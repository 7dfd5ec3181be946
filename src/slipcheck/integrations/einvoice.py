"""Client for the Ministry of Finance e-invoice platform (authoritative lookup).

The platform is queried by invoice number and issue date. Scanned codes
give us the number and random code, so the client tries the known issue
date first and then walks back over recent months until one succeeds.
"""

import calendar
import logging
from collections.abc import Callable
from datetime import date, datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from slipcheck.config import DEFAULT_EINVOICE_BASE_URL
from slipcheck.models import (
    DEFAULT_TAX_RATE,
    UNKNOWN_MERCHANT,
    AuthoritativeInvoice,
    LineItem,
)

logger = logging.getLogger(__name__)

INVOICE_ENDPOINT = "/PB2CAPIVAN/invapp/InvApp"
API_VERSION = "0.5"
LOOKBACK_MONTHS = 3
SUCCESS_CODE = "200"
RESPONSE_DATE_FORMATS = ["%Y-%m-%d", "%Y%m%d", "%Y/%m/%d"]


class EInvoiceLookupError(Exception):
    """Base exception for authoritative lookup failures."""


class LookupTimeoutError(EInvoiceLookupError):
    """Raised when the platform does not answer in time."""


class LookupAuthError(EInvoiceLookupError):
    """Raised when the platform rejects the app ID."""


class InvoiceNotFoundError(EInvoiceLookupError):
    """Raised when no queried period returns the invoice."""


class LookupResponseError(EInvoiceLookupError):
    """Raised for error codes and unusable response bodies."""


def _is_retryable_error(exception: BaseException) -> bool:
    """Retry on network errors, HTTP 429 and HTTP 503 only."""
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in (429, 503)
    return False


class _DetailItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str | None = None
    quantity: str | None = None
    unit_price: str | None = Field(default=None, alias="unitPrice")
    amount: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)


class _DetailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: str | None = None
    msg: str | None = None
    inv_num: str | None = Field(default=None, alias="invNum")
    inv_date: str | None = Field(default=None, alias="invDate")
    seller_name: str | None = Field(default=None, alias="sellerName")
    seller_address: str | None = Field(default=None, alias="sellerAddress")
    seller_ban: str | None = Field(default=None, alias="sellerBan")
    buyer_ban: str | None = Field(default=None, alias="buyerBan")
    total_amount: str | None = Field(default=None, alias="totalAmount")
    inv_detail: list[_DetailItem] = Field(default_factory=list, alias="invDetail")

    @field_validator(
        "code",
        "inv_num",
        "inv_date",
        "seller_ban",
        "buyer_ban",
        "total_amount",
        mode="before",
    )
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)

    @field_validator("inv_detail", mode="before")
    @classmethod
    def _default_details(cls, value):
        return value or []


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_response_date(value: str | None) -> date | None:
    if not value:
        return None
    for fmt in RESPONSE_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def _months_back(day: date, months: int) -> date:
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def _line_item(item: _DetailItem) -> LineItem | None:
    quantity = _parse_float(item.quantity)
    amount = _parse_float(item.amount)
    if not item.description or quantity is None or quantity <= 0 or amount is None:
        return None
    unit_price = _parse_float(item.unit_price) or 0.0
    return LineItem(
        name=item.description,
        quantity=quantity,
        unit_price=unit_price if unit_price > 0 else amount / quantity,
        amount=amount,
    )


def parse_detail_response(payload: dict) -> AuthoritativeInvoice:
    """
    Convert a qryInvDetail response body into an AuthoritativeInvoice.

    Raises:
        LookupResponseError: If the platform reports an error code or the
            body has no usable date or total.
    """
    try:
        response = _DetailResponse.model_validate(payload)
    except ValidationError as e:
        raise LookupResponseError(f"Unexpected e-invoice response: {e}") from e
    if response.code != SUCCESS_CODE:
        raise LookupResponseError(
            f"e-invoice platform error {response.code}: {response.msg or '未知錯誤'}"
        )

    issue_date = _parse_response_date(response.inv_date)
    total = _parse_float(response.total_amount)
    if issue_date is None or total is None:
        raise LookupResponseError("e-invoice response lacks invoice date or total")

    line_items = [
        line_item for item in response.inv_detail if (line_item := _line_item(item))
    ]
    tax_rate = float(DEFAULT_TAX_RATE)

    return AuthoritativeInvoice(
        invoice_number=response.inv_num or "",
        issue_date=issue_date,
        seller_name=response.seller_name or UNKNOWN_MERCHANT,
        seller_id=response.seller_ban,
        seller_address=response.seller_address,
        buyer_id=response.buyer_ban,
        amount=total,
        tax_amount=total * tax_rate / (1 + tax_rate),
        line_items=line_items,
    )


class EInvoiceClient:
    """Async client for invoice detail lookups on the e-invoice platform.

    Attributes:
        app_id: App ID issued by the platform
        base_url: Platform base URL
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        app_id: str,
        base_url: str = DEFAULT_EINVOICE_BASE_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        """
        Initialize the client.

        Args:
            app_id: App ID issued by the platform
            base_url: Platform base URL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
            today: Clock used to pick the months to query
        """
        if not app_id:
            raise ValueError("app_id must be set to query the e-invoice platform")
        self.app_id = app_id
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport
        self._today = today
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazily create and return the underlying httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "EInvoiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @retry(
        retry=retry_if_exception(_is_retryable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _get(self, params: dict[str, str]) -> dict:
        response = await self.client.get(INVOICE_ENDPOINT, params=params)
        if response.status_code in (401, 403):
            raise LookupAuthError(f"e-invoice platform rejected app ID ({response.status_code})")
        response.raise_for_status()
        return response.json()

    async def fetch_invoice_by_number(
        self,
        invoice_number: str,
        invoice_date: date,
        random_code: str | None = None,
    ) -> AuthoritativeInvoice:
        """
        Query one invoice for a given issue date.

        Raises:
            LookupTimeoutError: If the platform times out
            LookupAuthError: If the app ID is rejected
            LookupResponseError: For HTTP errors and error responses
        """
        params = {
            "version": API_VERSION,
            "action": "qryInvDetail",
            "appID": self.app_id,
            "invNum": invoice_number,
            "invDate": invoice_date.strftime("%Y-%m-%d"),
        }
        if random_code:
            params["randomNumber"] = random_code

        try:
            payload = await self._get(params)
        except httpx.TimeoutException as e:
            raise LookupTimeoutError(f"e-invoice lookup timed out: {e}") from e
        except httpx.HTTPError as e:
            raise LookupResponseError(f"e-invoice lookup failed: {e}") from e
        except ValueError as e:
            raise LookupResponseError(f"e-invoice response is not JSON: {e}") from e

        return parse_detail_response(payload)

    async def query_invoice_detail(
        self,
        invoice_number: str,
        random_code: str,
        issue_date: date | None = None,
    ) -> AuthoritativeInvoice:
        """
        Look up an invoice from a scanned code.

        Tries ``issue_date`` first when given, then the current month and the
        previous ones. An auth failure stops the search immediately.

        Raises:
            LookupAuthError: If the app ID is rejected
            InvoiceNotFoundError: If no queried period returns the invoice
        """
        today = self._today()
        candidates = [_months_back(today, offset) for offset in range(LOOKBACK_MONTHS)]
        if issue_date is not None:
            candidates = [issue_date, *(d for d in candidates if d != issue_date)]

        last_error: EInvoiceLookupError | None = None
        for invoice_date in candidates:
            try:
                return await self.fetch_invoice_by_number(
                    invoice_number, invoice_date, random_code
                )
            except LookupAuthError:
                raise
            except EInvoiceLookupError as e:
                logger.debug("Lookup of %s on %s failed: %s", invoice_number, invoice_date, e)
                last_error = e

        raise InvoiceNotFoundError(
            f"Invoice {invoice_number} not found on the e-invoice platform"
        ) from last_error
