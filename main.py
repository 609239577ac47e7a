import asyncio
import logging
import os
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from apple_store import AppleStoreApiError, AppleStoreConfig, AppleStoreConfigError
from price_engine import EmptyCandidateSetError, PriceValidationError, ResourceNotFoundError
from pricing_service import PricingService

load_dotenv()


class DailyLogFileHandler(logging.FileHandler):
    """Appends to ``server_YYYY-MM-DD.log`` and moves to a new file when the day changes."""

    def __init__(self, directory: Path, encoding: str = "utf-8", today: Callable[[], date] = date.today):
        directory.mkdir(parents=True, exist_ok=True)
        self.directory = directory
        self._today = today
        self._day = today()
        super().__init__(self._path_for(self._day), encoding=encoding, delay=True)

    def _path_for(self, day: date) -> str:
        return os.path.abspath(self.directory / f"server_{day:%Y-%m-%d}.log")

    def emit(self, record: logging.LogRecord) -> None:
        # Handler.handle holds self.lock here
        day = self._today()
        if day != self._day:
            self._day = day
            if self.stream:
                self.stream.close()
                self.stream = None
            self.baseFilename = self._path_for(day)
        super().emit(record)


def configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level_name, logging.INFO))
    root_logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    log_directory = Path(
        os.getenv("LOG_DIRECTORY") or Path(__file__).resolve().parent / "logs"
    )
    file_handler = DailyLogFileHandler(log_directory)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="iap-price-editor")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _run_in_thread(func, /, *args, **kwargs):
    return await asyncio.to_thread(func, *args, **kwargs)


@lru_cache(maxsize=1)
def get_pricing_service() -> PricingService:
    return PricingService.from_config(AppleStoreConfig.from_env())


def _pricing_service() -> PricingService:
    try:
        return get_pricing_service()
    except AppleStoreConfigError as exc:
        logger.error("Apple Store configuration error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc


class PriceUpdateRequest(BaseModel):
    iapId: Optional[str] = None
    territory: Optional[str] = None
    pricePointId: Optional[str] = None
    preserveCurrentPrice: bool = False


class BulkEditRequest(BaseModel):
    iapId: Optional[str] = None
    csvText: str = ""
    preserveCurrentPrice: bool = True


def _to_http_error(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, AppleStoreConfigError):
        logger.error("Apple Store configuration error: %s", exc)
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, PriceValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (ResourceNotFoundError, EmptyCandidateSetError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AppleStoreApiError):
        logger.warning("Apple API rejected %s: %s", action, exc)
        return HTTPException(
            status_code=502,
            detail={"message": str(exc), "status": exc.status_code, "body": exc.body_text},
        )
    logger.exception("Failed to %s", action)
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/api/appstore/prices")
async def api_get_prices(
    iapId: Optional[str] = Query(default=None),
    territory: Optional[str] = Query(default=None),
    fetch: Optional[str] = Query(default=None),
    cursor: Optional[str] = Query(default=None),
    service: PricingService = Depends(_pricing_service),
):
    try:
        if iapId and territory and fetch == "pricePoints":
            points = await _run_in_thread(service.list_price_points, iapId, territory)
            return {"pricePoints": [point.to_dict() for point in points]}

        if iapId:
            listing = await _run_in_thread(service.resolve_and_list_prices, iapId, cursor)
            return listing.to_dict()

        products = await _run_in_thread(service.list_products)
        return {"inAppPurchases": products}
    except HTTPException:
        raise
    except Exception as exc:
        raise _to_http_error(exc, "load App Store prices") from exc


async def _update_price(payload: PriceUpdateRequest, service: PricingService) -> Dict[str, Any]:
    if not payload.iapId or not payload.territory or not payload.pricePointId:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: iapId, territory, pricePointId",
        )
    logger.info("Updating price for %s in %s", payload.iapId, payload.territory)
    try:
        return await _run_in_thread(
            service.update_price,
            payload.iapId,
            payload.territory,
            payload.pricePointId,
            payload.preserveCurrentPrice,
        )
    except Exception as exc:
        raise _to_http_error(exc, "update price") from exc


@app.post("/api/appstore/prices")
async def api_create_price(
    payload: PriceUpdateRequest, service: PricingService = Depends(_pricing_service)
):
    return await _update_price(payload, service)


@app.patch("/api/appstore/prices")
async def api_patch_price(
    payload: PriceUpdateRequest, service: PricingService = Depends(_pricing_service)
):
    return await _update_price(payload, service)


@app.post("/api/appstore/prices/bulk")
async def api_bulk_edit_prices(
    payload: BulkEditRequest, service: PricingService = Depends(_pricing_service)
):
    try:
        outcome = await _run_in_thread(
            service.bulk_edit,
            payload.iapId,
            payload.csvText,
            payload.preserveCurrentPrice,
        )
    except Exception as exc:
        raise _to_http_error(exc, "run bulk price edit") from exc
    return outcome.to_dict()
