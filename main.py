"""
Iridium Passthrough API
Near-Earth asteroid lookups over NASA NeoWs, one week at a time.
Favourites are kept close at hand.
"""

from fastapi import FastAPI, APIRouter, Depends, Request, status, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from typing import Optional, List, Dict, Any, Tuple, Union
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import httpx
import os
import re
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError
import asyncio
from functools import lru_cache
import logging

# Configure logging once, for the whole service
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("iridium")

# NeoWs rejects feed windows wider than 7 days. Boundaries advance by 6 days.
CHUNK_STEP_DAYS = 6

# === CONFIGURATION ===

class Settings:
    """Configuration read from the environment."""

    def __init__(self):
        self.nasa_api_key = os.getenv("NASA_API_KEY", "DEMO_KEY")
        self.nasa_base_url = os.getenv("NASA_BASE_URL", "https://api.nasa.gov/neo/rest/v1")
        self.mongodb_url = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
        self.database_name = os.getenv("DATABASE_NAME", "iridium")

        # Upstream courtesy: bounded fan-out, small pause, short-lived cache
        self.max_concurrent_requests = int(os.getenv("MAX_CONCURRENT_REQUESTS", "4"))
        self.request_timeout = float(os.getenv("REQUEST_TIMEOUT", "30.0"))
        self.request_delay = float(os.getenv("REQUEST_DELAY", "0.1"))
        self.cache_ttl = int(os.getenv("CACHE_TTL", "300"))
        self.cache_max_entries = int(os.getenv("CACHE_MAX_ENTRIES", "512"))

@lru_cache()
def get_settings() -> Settings:
    """Single source of truth, cached for efficiency."""
    return Settings()

# === ERRORS ===

class PassthroughError(Exception):
    """Base class for errors raised by the passthrough service."""

class InvalidInputError(PassthroughError):
    """Caller supplied something we cannot parse."""

    def __init__(self, message: str, root_cause: str = ""):
        super().__init__(message)
        self.message = message
        self.root_cause = root_cause

class InvalidRangeError(InvalidInputError):
    """Start date falls after end date."""

    def __init__(self, start: date, end: date):
        super().__init__("Invalid date range", f"start_date {start} is after end_date {end}")
        self.start = start
        self.end = end

class FavouriteConflictError(PassthroughError):
    def __init__(self, asteroid_id: int):
        super().__init__(f"Asteroid {asteroid_id} is already a favourite")
        self.asteroid_id = asteroid_id

class UpstreamStatusError(PassthroughError):
    """NeoWs answered a detail lookup with a non-2xx status."""

    def __init__(self, status_code: int, payload: Any):
        super().__init__(f"NeoWs responded with {status_code}")
        self.status_code = status_code
        self.payload = payload

# === DATABASE CONNECTION ===

class Database:
    """MongoDB connection manager."""

    client: Optional[AsyncIOMotorClient] = None

    @classmethod
    async def connect(cls):
        settings = get_settings()
        cls.client = AsyncIOMotorClient(settings.mongodb_url)
        logger.info("Database connection established.")

    @classmethod
    async def disconnect(cls):
        if cls.client:
            cls.client.close()
            cls.client = None
            logger.info("Database connection closed.")

    @classmethod
    def get_database(cls):
        if not cls.client:
            raise RuntimeError("Database not connected.")
        settings = get_settings()
        return cls.client[settings.database_name]

# === DATA MODELS ===

class AsteroidRecord(BaseModel):
    """One asteroid as reported by a feed search. Name and id, nothing more."""
    name: str
    id: int

class Favourite(BaseModel):
    """An asteroid the caller wants to keep. Extra metadata is stored as given."""
    model_config = ConfigDict(extra="allow")

    id: int
    name: Optional[str] = None

class ErrorOutput(BaseModel):
    """Body of every caller-visible error."""
    code: int
    http_error: str
    message: str
    root_cause: str = ""

@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar window sent to a single feed request."""
    start: date
    end: date

@dataclass(frozen=True)
class NeoFeedSuccess:
    near_earth_objects: Optional[Dict[str, List[Dict[str, Any]]]]
    request: str

@dataclass(frozen=True)
class NeoFeedFailure:
    code: int
    http_error: str
    error_message: str
    request: str

    @classmethod
    def from_payload(cls, status_code: int, payload: Any, request: str) -> "NeoFeedFailure":
        """Read the NeoWs error body, falling back to the HTTP status."""
        if not isinstance(payload, dict):
            payload = {"error_message": str(payload)}
        # api.data.gov gateway errors nest under "error"
        nested = payload.get("error")
        if isinstance(nested, dict):
            return cls(
                code=status_code,
                http_error=str(nested.get("code", "")),
                error_message=str(nested.get("message", "")),
                request=request,
            )
        # Some gateway errors carry a symbolic code such as OVER_RATE_LIMIT
        code = payload.get("code", status_code)
        if isinstance(code, bool) or not isinstance(code, (int, str)) or not str(code).isdigit():
            code = status_code
        return cls(
            code=int(code),
            http_error=str(payload.get("http_error", "")),
            error_message=str(payload.get("error_message", "")),
            request=str(payload.get("request", request)),
        )

UpstreamResult = Union[NeoFeedSuccess, NeoFeedFailure]

# === NASA NEO API CLIENT ===

class NASANeoClient:
    """Client for NASA's Near Earth Object Web Service.

    Feed searches return an UpstreamResult: structured NeoWs errors come back
    as NeoFeedFailure values. Transport faults are not caught here.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.nasa_base_url
        self.api_key = self.settings.nasa_api_key
        self._transport = transport
        self._cache: Dict[str, Tuple[int, Any]] = {}
        self._cache_timestamps: Dict[str, datetime] = {}

    def _is_cache_valid(self, key: str) -> bool:
        """Check freshness, evicting the entry once it has gone stale."""
        if key not in self._cache_timestamps:
            return False

        age = (datetime.now(timezone.utc) - self._cache_timestamps[key]).total_seconds()
        if age < self.settings.cache_ttl:
            return True

        self._evict(key)
        return False

    def _evict(self, key: str) -> None:
        self._cache.pop(key, None)
        self._cache_timestamps.pop(key, None)

    def _store(self, key: str, value: Tuple[int, Any]) -> None:
        if self.settings.cache_ttl <= 0 or self.settings.cache_max_entries <= 0:
            return

        now = datetime.now(timezone.utc)
        for stale in [k for k, ts in self._cache_timestamps.items()
                      if (now - ts).total_seconds() >= self.settings.cache_ttl]:
            self._evict(stale)

        # Still full: drop the oldest entries first
        while len(self._cache) >= self.settings.cache_max_entries:
            oldest = min(self._cache_timestamps, key=self._cache_timestamps.get)
            self._evict(oldest)

        self._cache[key] = value
        self._cache_timestamps[key] = now

    async def _get(self, endpoint: str, params: dict = None) -> Tuple[int, Any]:
        """GET from NeoWs, returning (status code, decoded body)."""
        if params is None:
            params = {}

        cache_key = f"{endpoint}:{sorted(params.items())}"
        if self._is_cache_valid(cache_key):
            logger.info(f"Cache hit for {endpoint}")
            return self._cache[cache_key]

        query = dict(params, api_key=self.api_key)
        url = f"{self.base_url}/{endpoint}"

        if self.settings.request_delay > 0:
            await asyncio.sleep(self.settings.request_delay)

        async with httpx.AsyncClient(timeout=self.settings.request_timeout,
                                     transport=self._transport) as client:
            response = await client.get(url, params=query)

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if response.is_success:
            self._store(cache_key, (response.status_code, data))
        else:
            logger.warning(f"NASA API error: {response.status_code} for {endpoint}")

        return response.status_code, data

    async def search_by_range(self, start: date, end: date) -> UpstreamResult:
        """Retrieve the NEO feed for one window of at most 7 days."""
        params = {"start_date": start.isoformat(), "end_date": end.isoformat()}
        request = f"{self.base_url}/feed?start_date={params['start_date']}&end_date={params['end_date']}"

        status_code, data = await self._get("feed", params)
        if status_code >= 400 or not isinstance(data, dict):
            return NeoFeedFailure.from_payload(status_code, data, request)
        return NeoFeedSuccess(near_earth_objects=data.get("near_earth_objects"), request=request)

    async def details_of(self, asteroid_id: int) -> dict:
        """Lookup a specific NEO by id."""
        status_code, data = await self._get(f"neo/{asteroid_id}")
        if status_code >= 400:
            raise UpstreamStatusError(status_code, data)
        return data

# Global client instance
nasa_client = NASANeoClient()

# === RANGE CHUNKING ===

def chunk_date_range(start: date, end: date, step_days: int = CHUNK_STEP_DAYS) -> List[DateRange]:
    """Split the inclusive window [start, end] into feed-sized DateRanges.

    Boundaries sit every ``step_days`` days from ``start``; each range runs
    from one boundary up to the day before the next, and the last range is
    clamped to ``end``. Ranges are contiguous and never overlap.

    2024-01-01 .. 2024-01-10 becomes 01-01..01-06 and 01-07..01-10.
    """
    if start > end:
        raise InvalidRangeError(start, end)

    ranges = []
    cursor = start
    while True:
        # Clamp before adding so windows ending near date.max never overflow
        if (end - cursor).days < step_days:
            chunk_end = end
        else:
            chunk_end = cursor + timedelta(days=step_days - 1)
        ranges.append(DateRange(start=cursor, end=chunk_end))
        if chunk_end == end:
            return ranges
        cursor = chunk_end + timedelta(days=1)

# === LOOKUP & AGGREGATION ===

def flatten_neo_groups(near_earth_objects: Dict[str, List[Dict[str, Any]]]) -> List[AsteroidRecord]:
    """Drop the per-date grouping, keeping name and id of every entry."""
    return [
        AsteroidRecord(name=neo["name"], id=int(neo["id"]))
        for neos in near_earth_objects.values()
        for neo in neos
    ]

def aggregate_results(per_range: List[List[AsteroidRecord]]) -> List[AsteroidRecord]:
    """Concatenate in chunk order and sort by name. Duplicates are kept."""
    combined = [record for records in per_range for record in records]
    return sorted(combined, key=lambda record: record.name)

class AsteroidLookupService:
    """Fans a date window out into one feed request per chunk."""

    def __init__(self, client: NASANeoClient, max_concurrency: int = 4):
        self.client = client
        self.max_concurrency = max(1, max_concurrency)

    async def _lookup_range(self, date_range: DateRange, semaphore: asyncio.Semaphore) -> List[AsteroidRecord]:
        async with semaphore:
            logger.info(f"client.search_by_range({date_range.start}, {date_range.end})")
            result = await self.client.search_by_range(date_range.start, date_range.end)

        if isinstance(result, NeoFeedFailure):
            logger.error(
                f"Got {result.code} {result.http_error}: {result.error_message} "
                f"for the request {result.request}"
            )
            return []

        if not result.near_earth_objects:
            logger.error(f"Got no near earth objects for the request {result.request}")
            return []

        records = flatten_neo_groups(result.near_earth_objects)
        logger.debug(f"Got {len(records)} asteroids for the request {result.request}")
        return records

    async def lookup(self, start: date, end: date) -> List[List[AsteroidRecord]]:
        """Per-chunk record lists, in chunk order regardless of completion order."""
        ranges = chunk_date_range(start, end)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = [asyncio.ensure_future(self._lookup_range(r, semaphore)) for r in ranges]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def search_by_range(self, start: date, end: date) -> List[AsteroidRecord]:
        return aggregate_results(await self.lookup(start, end))

# === FAVOURITES ===

class FavouritesGateway:
    """Create-if-absent access to the favourites collection."""

    def __init__(self, collection):
        self.collection = collection

    async def exists(self, asteroid_id: int) -> bool:
        return await self.collection.find_one({"id": asteroid_id}) is not None

    async def create(self, favourite: Favourite) -> Favourite:
        if await self.exists(favourite.id):
            raise FavouriteConflictError(favourite.id)

        # The unique index on "id" settles concurrent creates
        try:
            await self.collection.insert_one(favourite.model_dump(exclude_unset=True))
        except DuplicateKeyError:
            raise FavouriteConflictError(favourite.id)

        logger.info(f"Asteroid {favourite.id} added to favourites")
        return favourite

    async def all(self) -> List[Favourite]:
        documents = await self.collection.find({}, {"_id": 0}).sort("id", 1).to_list(length=None)
        return [Favourite(**document) for document in documents]

# === DEPENDENCIES ===

def get_neo_client() -> NASANeoClient:
    return nasa_client

def get_lookup_service(client: NASANeoClient = Depends(get_neo_client)) -> AsteroidLookupService:
    return AsteroidLookupService(client, max_concurrency=get_settings().max_concurrent_requests)

def get_favourites() -> FavouritesGateway:
    return FavouritesGateway(Database.get_database().favourites)

ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")

def parse_iso_date(value: str) -> date:
    """Strict YYYY-MM-DD; unpadded or basic-format dates are refused."""
    if not ISO_DATE.fullmatch(value):
        raise InvalidInputError("Invalid date format", f"'{value}' is not an ISO-8601 date (YYYY-MM-DD)")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise InvalidInputError("Invalid date format", f"'{value}': {e}")

# === FASTAPI APPLICATION ===

app = FastAPI(
    title="Iridium Passthrough API",
    description="Near-Earth asteroid search over NASA NeoWs, with favourites",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === ERROR HANDLERS ===

def error_response(code: int, http_error: str, message: str, root_cause: str = "") -> JSONResponse:
    body = ErrorOutput(code=code, http_error=http_error, message=message, root_cause=root_cause)
    return JSONResponse(status_code=code, content=body.model_dump())

@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return error_response(400, "Bad Request", exc.message, exc.root_cause)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return error_response(400, "Bad Request", "Invalid request", problems)

@app.exception_handler(FavouriteConflictError)
async def favourite_conflict_handler(request: Request, exc: FavouriteConflictError):
    return error_response(409, "Conflict", str(exc))

@app.exception_handler(UpstreamStatusError)
async def upstream_status_handler(request: Request, exc: UpstreamStatusError):
    return JSONResponse(status_code=exc.status_code, content=exc.payload)

@app.exception_handler(httpx.TransportError)
async def upstream_transport_handler(request: Request, exc: httpx.TransportError):
    logger.error(f"NASA API unreachable: {exc!r}")
    return error_response(503, "Service Unavailable", "Upstream data source unreachable", str(exc))

# === LIFECYCLE EVENTS ===

@app.on_event("startup")
async def startup_event():
    logger.info("Iridium passthrough initializing...")
    await Database.connect()

    # One favourite per asteroid
    db = Database.get_database()
    await db.favourites.create_index("id", unique=True)

    logger.info("Iridium passthrough is operational.")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Iridium passthrough shutting down...")
    await Database.disconnect()

# === HEALTH CHECK ===

@app.get("/api/health", tags=["System"])
async def health_check():
    """Simple heartbeat."""
    return {
        "status": "operational",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

# === PASSTHROUGH ENDPOINTS ===

router = APIRouter(prefix="/passthrough", tags=["Passthrough"])

@router.get("/search_by_range", response_model=List[AsteroidRecord])
async def search_by_range(
    start_date: str = Query(..., description="Start date (YYYY-MM-DD)"),
    end_date: str = Query(..., description="End date (YYYY-MM-DD)"),
    service: AsteroidLookupService = Depends(get_lookup_service)
):
    """Search asteroids over any window. Wide windows are split into
    feed-sized chunks; chunks NeoWs refuses are left out of the result."""
    start = parse_iso_date(start_date)
    end = parse_iso_date(end_date)

    asteroids = await service.search_by_range(start, end)
    logger.info(f"Search retrieved: {len(asteroids)} asteroids for {start} to {end}")
    return asteroids

@router.get("/details_of/{asteroid_id}")
async def details_of(
    asteroid_id: int,
    client: NASANeoClient = Depends(get_neo_client)
):
    """Upstream details for one asteroid, passed through as-is."""
    return await client.details_of(asteroid_id)

@router.post("/favourites", status_code=status.HTTP_201_CREATED)
async def create_favourite(
    favourite: Favourite,
    favourites: FavouritesGateway = Depends(get_favourites)
):
    stored = await favourites.create(favourite)
    return stored.model_dump(exclude_unset=True)

@router.get("/favourites")
async def get_all_favourites(favourites: FavouritesGateway = Depends(get_favourites)):
    return [favourite.model_dump(exclude_unset=True) for favourite in await favourites.all()]

app.include_router(router)

# === ROOT ENDPOINT ===

@app.get("/", tags=["System"])
async def root():
    return {
        "service": "Iridium Passthrough API",
        "version": "1.0.0",
        "status": "operational",
        "documentation": "/api/docs",
        "health": "/api/health"
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
