"""Currency reference data. Public, read-only."""

from dataclasses import asdict
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Query

from expense_tracker.managers import currency_manager
from expense_tracker.utils.error_handling import ExpenseTrackerError, to_http_exception

router = APIRouter(prefix="/api/currencies", tags=["Currencies"])


@router.get("")
async def list_currencies() -> Dict[str, Any]:
    return currency_manager.list_all()


@router.get("/supported")
async def supported_codes() -> List[str]:
    return [c["code"] for c in currency_manager.list_supported()["currencies"]]


@router.get("/popular")
async def popular_currencies() -> Dict[str, Any]:
    return currency_manager.list_popular()


@router.get("/search")
async def search_currencies(query: str = Query(..., min_length=1)) -> Dict[str, Any]:
    return currency_manager.search(query)


@router.get("/region/{region}")
async def currencies_by_region(region: str) -> Dict[str, Any]:
    return currency_manager.list_by_region(region)


def _get(code: str) -> currency_manager.CurrencyInfo:
    try:
        return currency_manager.get_currency(code)
    except ExpenseTrackerError as e:
        raise to_http_exception(e) from e


@router.get("/{code}")
async def get_currency(code: str) -> Dict[str, Any]:
    return asdict(_get(code))


@router.get("/{code}/supported")
async def is_supported(code: str) -> Dict[str, Any]:
    return currency_manager.support_status(code)


@router.get("/{code}/symbol")
async def currency_symbol(code: str) -> Dict[str, Any]:
    currency = _get(code)
    return {"code": currency.code, "symbol": currency.symbol}
