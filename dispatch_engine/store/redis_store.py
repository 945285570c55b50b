"""
Redis-backed record store.

Records are stored as JSON documents and validated with pydantic on every
read, so a malformed document is rejected at the boundary instead of
leaking missing fields into scoring.

Key layout (``{p}`` is the configured prefix, default ``dispatch``):
    {p}:ride:{ride_id}                 ride document
    {p}:driver:{driver_id}             driver document
    {p}:assignment:{assignment_id}     assignment document
    {p}:override:{override_id}         override document
    {p}:drivers                        set of known driver ids
    {p}:rides:active                   set of ride ids in an active status
    {p}:ride:{ride_id}:assignment      id of the ride's active assignment
    {p}:ride:{ride_id}:overrides       set of override ids for the ride
    {p}:rides:by_time                  zset scored by requested_at
    {p}:assignments:by_time            zset scored by assigned_at
    {p}:overrides:by_time              zset scored by overridden_at

Multi-record commits run as WATCH / MULTI / EXEC transactions: the records
the plan depends on are watched, read, planned with the shared planners,
and written in one EXEC. A concurrent write to any watched key aborts the
EXEC and the unit is re-read and re-planned.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError

from ..exceptions import (
    OverrideNotFound,
    PersistenceFailure,
    RecordValidationError,
    RideNotFound,
)
from ..models import (
    AssignmentStatus,
    DispatchAssignment,
    DriverAvailability,
    DriverStatus,
    EmergencyOverride,
    OverrideStatus,
    RideRequest,
    RideStatus,
    VehicleClass,
)
from .base import (
    ChangeSet,
    DispatchStore,
    close_override,
    plan_assignment,
    plan_override,
    plan_release,
    transition_ride,
)


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")


def _epoch(moment: datetime) -> float:
    """Sorted-set score for a timestamp. Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


class RedisConnectionManager:
    """
    Lazily creates a pooled Redis client, retrying the initial connect.

    A store must not fall over on a brief Redis blip during start-up.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        max_connections: int = 100,
        socket_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_delay: float = 0.1,
    ):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> redis.Redis:
        """
        Get a Redis client, creating the connection pool if needed.

        Raises:
            RedisConnectionError: If unable to connect after retries
        """
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is not None:
                return self._client

            for attempt in range(self._retry_attempts):
                try:
                    self._pool = redis.ConnectionPool.from_url(
                        self._redis_url,
                        max_connections=self._max_connections,
                        socket_timeout=self._socket_timeout,
                        decode_responses=True,
                    )
                    client = redis.Redis(connection_pool=self._pool)
                    await client.ping()
                    self._client = client
                    logger.info("Redis connection established successfully")
                    return self._client

                except RedisError as e:
                    logger.warning(f"Redis connection attempt {attempt + 1} failed: {e}")
                    if attempt < self._retry_attempts - 1:
                        await asyncio.sleep(self._retry_delay * (attempt + 1))
                    else:
                        raise RedisConnectionError(
                            f"Failed to connect to Redis after {self._retry_attempts} attempts"
                        ) from e

        raise RedisConnectionError("Unexpected state in connection manager")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None


class RedisDispatchStore(DispatchStore):
    """
    Dispatch records in Redis.

    Example:
        store = RedisDispatchStore(redis_url="redis://localhost:6379/0")
        await store.save_driver(driver)
        pool = await store.query_drivers(status=DriverStatus.AVAILABLE)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "dispatch",
        client: Optional[redis.Redis] = None,
        max_connections: int = 100,
        socket_timeout: float = 5.0,
        max_watch_retries: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            redis_url: Redis connection URL (ignored when ``client`` is given)
            key_prefix: Namespace for every key
            client: Pre-built client with ``decode_responses=True``
            max_watch_retries: Re-plans allowed when a watched key changes mid-commit
            clock: Timestamp source for record updates
        """
        self._prefix = key_prefix
        self._client = client
        self._manager = None if client is not None else RedisConnectionManager(
            redis_url,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
        )
        self._max_watch_retries = max_watch_retries
        self._clock = clock or datetime.utcnow

    # =========================================================================
    # Keys
    # =========================================================================

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix,) + parts)

    def _ride_key(self, ride_id: str) -> str:
        return self._key("ride", ride_id)

    def _driver_key(self, driver_id: str) -> str:
        return self._key("driver", driver_id)

    def _assignment_key(self, assignment_id: str) -> str:
        return self._key("assignment", assignment_id)

    def _override_key(self, override_id: str) -> str:
        return self._key("override", override_id)

    def _active_pointer_key(self, ride_id: str) -> str:
        return self._key("ride", ride_id, "assignment")

    def _ride_overrides_key(self, ride_id: str) -> str:
        return self._key("ride", ride_id, "overrides")

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _redis(self) -> redis.Redis:
        if self._client is not None:
            return self._client
        try:
            return await self._manager.get_client()
        except RedisError as e:
            logger.error(f"Redis unavailable: {e}")
            raise PersistenceFailure(f"Redis unavailable: {e}") from e

    @staticmethod
    def _decode(model: Type[M], raw: Optional[str], record_id: str) -> Optional[M]:
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise RecordValidationError(model.__name__, record_id, str(e)) from e

    async def _run(self, operation: str, call: Awaitable[T]) -> T:
        """Await a backend call, mapping Redis errors to PersistenceFailure."""
        try:
            return await call
        except RedisError as e:
            logger.error(f"Redis {operation} failed: {e}")
            raise PersistenceFailure(f"{operation} failed: {e}") from e

    async def _transact(self, keys: List[str], body: Callable[[redis.client.Pipeline], Awaitable[T]]) -> T:
        """
        Run ``body`` inside WATCH/MULTI/EXEC, re-running it when a watched key changes.

        ``body`` reads through the pipeline (immediate mode while watching),
        may WATCH further keys, then calls ``pipe.multi()`` and queues writes.
        """
        client = await self._redis()
        for attempt in range(self._max_watch_retries):
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(*keys)
                    result = await body(pipe)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.warning(
                        f"Watched keys changed during commit (attempt {attempt + 1}); re-planning"
                    )
                    continue
        raise PersistenceFailure(
            f"Commit aborted after {self._max_watch_retries} concurrent modifications"
        )

    async def _commit(self, keys: List[str], body: Callable[[redis.client.Pipeline], Awaitable[T]]) -> T:
        try:
            return await self._transact(keys, body)
        except RedisError as e:
            logger.error(f"Redis transaction failed: {e}")
            raise PersistenceFailure(f"transaction failed: {e}") from e

    async def _read_ride(self, conn, ride_id: str) -> Optional[RideRequest]:
        return self._decode(RideRequest, await conn.get(self._ride_key(ride_id)), ride_id)

    async def _read_driver(self, conn, driver_id: str) -> Optional[DriverAvailability]:
        return self._decode(DriverAvailability, await conn.get(self._driver_key(driver_id)), driver_id)

    async def _read_active_assignment(self, conn, ride_id: str) -> Optional[DispatchAssignment]:
        assignment_id = await conn.get(self._active_pointer_key(ride_id))
        if assignment_id is None:
            return None
        return self._decode(
            DispatchAssignment,
            await conn.get(self._assignment_key(assignment_id)),
            assignment_id,
        )

    async def _read_open_overrides(self, conn, ride_id: str) -> List[EmergencyOverride]:
        override_ids = sorted(await conn.smembers(self._ride_overrides_key(ride_id)))
        overrides = []
        for override_id in override_ids:
            override = self._decode(
                EmergencyOverride,
                await conn.get(self._override_key(override_id)),
                override_id,
            )
            if override is not None and override.status == OverrideStatus.ACTIVE:
                overrides.append(override)
        return overrides

    def _queue_ride(self, pipe, ride: RideRequest) -> None:
        pipe.set(self._ride_key(ride.ride_id), ride.model_dump_json())
        pipe.zadd(self._key("rides", "by_time"), {ride.ride_id: _epoch(ride.requested_at)})
        if ride.status.is_active:
            pipe.sadd(self._key("rides", "active"), ride.ride_id)
        else:
            pipe.srem(self._key("rides", "active"), ride.ride_id)

    def _queue_driver(self, pipe, driver: DriverAvailability) -> None:
        pipe.set(self._driver_key(driver.driver_id), driver.model_dump_json())
        pipe.sadd(self._key("drivers"), driver.driver_id)

    def _queue_changes(self, pipe, changes: ChangeSet) -> None:
        for ride in changes.rides:
            self._queue_ride(pipe, ride)
        for driver in changes.drivers:
            self._queue_driver(pipe, driver)
        for assignment in changes.assignments:
            pipe.set(self._assignment_key(assignment.assignment_id), assignment.model_dump_json())
            pipe.zadd(
                self._key("assignments", "by_time"),
                {assignment.assignment_id: _epoch(assignment.assigned_at)},
            )
            # Write order puts the closed assignment before its replacement
            if assignment.status == AssignmentStatus.ACTIVE:
                pipe.set(self._active_pointer_key(assignment.ride_id), assignment.assignment_id)
            else:
                pipe.delete(self._active_pointer_key(assignment.ride_id))
        for override in changes.overrides:
            pipe.set(self._override_key(override.override_id), override.model_dump_json())
            pipe.zadd(
                self._key("overrides", "by_time"),
                {override.override_id: _epoch(override.overridden_at)},
            )
            pipe.sadd(self._ride_overrides_key(override.ride_id), override.override_id)

    # =========================================================================
    # Rides
    # =========================================================================

    async def get_ride(self, ride_id: str) -> Optional[RideRequest]:
        client = await self._redis()
        raw = await self._run("get_ride", client.get(self._ride_key(ride_id)))
        return self._decode(RideRequest, raw, ride_id)

    async def save_ride(self, ride: RideRequest) -> None:
        client = await self._redis()
        async with client.pipeline(transaction=True) as pipe:
            self._queue_ride(pipe, ride)
            await self._run("save_ride", pipe.execute())

    async def list_rides(self, start: datetime, end: datetime) -> List[RideRequest]:
        client = await self._redis()
        ride_ids = await self._run(
            "list_rides",
            client.zrangebyscore(self._key("rides", "by_time"), _epoch(start), _epoch(end)),
        )
        return await self._load_many(client, RideRequest, self._ride_key, ride_ids)

    async def update_ride_status(self, ride_id: str, status: RideStatus) -> RideRequest:
        async def body(pipe) -> RideRequest:
            ride = await self._read_ride(pipe, ride_id)
            if ride is None:
                raise RideNotFound(f"Ride {ride_id} not found")
            updated = transition_ride(ride, status, self._clock())
            pipe.multi()
            self._queue_ride(pipe, updated)
            return updated

        return await self._commit([self._ride_key(ride_id)], body)

    # =========================================================================
    # Drivers
    # =========================================================================

    async def get_driver(self, driver_id: str) -> Optional[DriverAvailability]:
        client = await self._redis()
        raw = await self._run("get_driver", client.get(self._driver_key(driver_id)))
        return self._decode(DriverAvailability, raw, driver_id)

    async def save_driver(self, driver: DriverAvailability) -> None:
        client = await self._redis()
        async with client.pipeline(transaction=True) as pipe:
            self._queue_driver(pipe, driver)
            await self._run("save_driver", pipe.execute())

    async def query_drivers(
        self,
        status: Optional[DriverStatus] = None,
        vehicle_class: Optional[VehicleClass] = None,
        limit: Optional[int] = None,
    ) -> List[DriverAvailability]:
        client = await self._redis()
        driver_ids = sorted(await self._run("query_drivers", client.smembers(self._key("drivers"))))
        if not driver_ids:
            return []

        raws = await self._run(
            "query_drivers",
            client.mget([self._driver_key(driver_id) for driver_id in driver_ids]),
        )

        drivers: List[DriverAvailability] = []
        for driver_id, raw in zip(driver_ids, raws):
            try:
                driver = self._decode(DriverAvailability, raw, driver_id)
            except RecordValidationError as e:
                # One bad document must not take the whole pool offline
                logger.warning(f"Skipping driver record: {e}")
                continue
            if driver is None:
                continue
            if status is not None and driver.status != status:
                continue
            if vehicle_class is not None and driver.vehicle_class != vehicle_class:
                continue
            drivers.append(driver)
            if limit is not None and len(drivers) >= limit:
                break
        return drivers

    async def get_workloads(self) -> Dict[str, int]:
        client = await self._redis()
        ride_ids = sorted(await self._run("get_workloads", client.smembers(self._key("rides", "active"))))
        workloads: Dict[str, int] = {}
        for ride in await self._load_many(client, RideRequest, self._ride_key, ride_ids):
            if ride.assigned_driver_id and ride.status.is_active:
                workloads[ride.assigned_driver_id] = workloads.get(ride.assigned_driver_id, 0) + 1
        return workloads

    # =========================================================================
    # Assignments & overrides
    # =========================================================================

    async def get_assignment(self, ride_id: str) -> Optional[DispatchAssignment]:
        client = await self._redis()
        try:
            return await self._read_active_assignment(client, ride_id)
        except RedisError as e:
            logger.error(f"Redis get_assignment failed: {e}")
            raise PersistenceFailure(f"get_assignment failed: {e}") from e

    async def list_assignments(
        self,
        start: datetime,
        end: datetime,
        ride_id: Optional[str] = None,
    ) -> List[DispatchAssignment]:
        client = await self._redis()
        ids = await self._run(
            "list_assignments",
            client.zrangebyscore(self._key("assignments", "by_time"), _epoch(start), _epoch(end)),
        )
        assignments = await self._load_many(client, DispatchAssignment, self._assignment_key, ids)
        if ride_id is not None:
            assignments = [a for a in assignments if a.ride_id == ride_id]
        return assignments

    async def get_override(self, override_id: str) -> Optional[EmergencyOverride]:
        client = await self._redis()
        raw = await self._run("get_override", client.get(self._override_key(override_id)))
        return self._decode(EmergencyOverride, raw, override_id)

    async def list_overrides(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        ride_id: Optional[str] = None,
    ) -> List[EmergencyOverride]:
        client = await self._redis()
        ids = await self._run(
            "list_overrides",
            client.zrangebyscore(
                self._key("overrides", "by_time"),
                _epoch(start) if start is not None else "-inf",
                _epoch(end) if end is not None else "+inf",
            ),
        )
        overrides = await self._load_many(client, EmergencyOverride, self._override_key, ids)
        if ride_id is not None:
            overrides = [o for o in overrides if o.ride_id == ride_id]
        return overrides

    async def set_override_status(self, override_id: str, status: OverrideStatus) -> EmergencyOverride:
        key = self._override_key(override_id)

        async def body(pipe) -> EmergencyOverride:
            override = self._decode(EmergencyOverride, await pipe.get(key), override_id)
            if override is None:
                raise OverrideNotFound(f"Override {override_id} not found")
            updated = close_override(override, status, self._clock())
            pipe.multi()
            pipe.set(key, updated.model_dump_json())
            return updated

        return await self._commit([key], body)

    async def _load_many(
        self,
        client: redis.Redis,
        model: Type[M],
        key_for: Callable[[str], str],
        record_ids: List[str],
    ) -> List[M]:
        """Fetch documents in the given order, dropping ids whose document is gone."""
        if not record_ids:
            return []
        raws = await self._run("load", client.mget([key_for(record_id) for record_id in record_ids]))
        records = []
        for record_id, raw in zip(record_ids, raws):
            record = self._decode(model, raw, record_id)
            if record is not None:
                records.append(record)
        return records

    # =========================================================================
    # Atomic units
    # =========================================================================

    async def commit_assignment(
        self,
        assignment: DispatchAssignment,
        ride: RideRequest,
        reason: Optional[str] = None,
    ) -> RideRequest:
        keys = [
            self._ride_key(ride.ride_id),
            self._driver_key(assignment.driver_id),
            self._active_pointer_key(ride.ride_id),
        ]

        async def body(pipe) -> RideRequest:
            changes = plan_assignment(
                ride=ride,
                stored_ride=await self._read_ride(pipe, ride.ride_id),
                driver=await self._read_driver(pipe, assignment.driver_id),
                active=await self._read_active_assignment(pipe, ride.ride_id),
                assignment=assignment,
                reason=reason,
                now=self._clock(),
            )
            pipe.multi()
            self._queue_changes(pipe, changes)
            return changes.rides[0]

        return await self._commit(keys, body)

    async def commit_override(
        self,
        override: EmergencyOverride,
        assignment: DispatchAssignment,
    ) -> EmergencyOverride:
        ride_id = override.ride_id
        keys = [
            self._ride_key(ride_id),
            self._driver_key(override.new_driver_id),
            self._active_pointer_key(ride_id),
            self._ride_overrides_key(ride_id),
        ]

        async def body(pipe) -> EmergencyOverride:
            ride = await self._read_ride(pipe, ride_id)
            prior = None
            if ride is not None and ride.assigned_driver_id:
                await pipe.watch(self._driver_key(ride.assigned_driver_id))
                prior = await self._read_driver(pipe, ride.assigned_driver_id)

            changes = plan_override(
                override=override,
                assignment=assignment,
                ride=ride,
                new_driver=await self._read_driver(pipe, override.new_driver_id),
                prior_driver=prior,
                active=await self._read_active_assignment(pipe, ride_id),
                open_overrides=await self._read_open_overrides(pipe, ride_id),
                now=self._clock(),
            )
            pipe.multi()
            self._queue_changes(pipe, changes)
            return changes.overrides[-1]

        return await self._commit(keys, body)

    async def release_ride(self, ride_id: str, outcome: RideStatus) -> RideRequest:
        keys = [
            self._ride_key(ride_id),
            self._active_pointer_key(ride_id),
            self._ride_overrides_key(ride_id),
        ]

        async def body(pipe) -> RideRequest:
            ride = await self._read_ride(pipe, ride_id)
            driver = None
            if ride is not None and ride.assigned_driver_id:
                await pipe.watch(self._driver_key(ride.assigned_driver_id))
                driver = await self._read_driver(pipe, ride.assigned_driver_id)

            changes = plan_release(
                ride=ride,
                ride_id=ride_id,
                outcome=outcome,
                driver=driver,
                active=await self._read_active_assignment(pipe, ride_id),
                open_overrides=await self._read_open_overrides(pipe, ride_id),
                now=self._clock(),
            )
            pipe.multi()
            self._queue_changes(pipe, changes)
            return changes.rides[0]

        return await self._commit(keys, body)

    async def close(self) -> None:
        if self._manager is not None:
            await self._manager.close()
