#!/usr/bin/env python3
"""fieldlog field session simulator.

Generates realistic observation traffic against a running fieldlog instance,
dropping and restoring connectivity along the way so the offline write queue
gets exercised.

Usage:
    # 3 observers recording around Oslo for 2 minutes
    python -m tools.simulator.simulate --server http://localhost:8000 --observers 3 --duration 120

    # Long offline stretches: 30 s out of every minute
    python -m tools.simulator.simulate --server http://localhost:8000 --offline-every 60 --offline-for 30

    # Specific location
    python -m tools.simulator.simulate --server http://localhost:8000 --center 69.6492,18.9553
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
from dataclasses import dataclass

import httpx

ACCURACY_CHOICES_M = (1, 5, 10, 25, 50, 75, 100, 125, 150, 200, 250)
SEARCH_TERMS = ("bjørk", "gran", "furu", "rogn", "bokfink", "kjøttmeis", "blåbær", "lyng")


@dataclass
class SimObserver:
    name: str
    lat: float
    lon: float
    created: int = 0
    edited: int = 0
    deleted: int = 0
    errors: int = 0


def move_observer(observer: SimObserver, max_step_m: float = 150.0) -> None:
    """Walk a random distance in a random direction."""
    distance_m = random.uniform(0, max_step_m)
    bearing_rad = math.radians(random.uniform(0, 360))

    # Approximate: 1 degree latitude ~ 111,000 m
    observer.lat += (distance_m * math.cos(bearing_rad)) / 111_000
    observer.lon += (distance_m * math.sin(bearing_rad)) / (111_000 * math.cos(math.radians(observer.lat)))


async def pick_species(client: httpx.AsyncClient, server_url: str) -> dict:
    """Search the reference data like the recording form does."""
    resp = await client.get(f"{server_url}/api/v1/species/search",
                            params={"q": random.choice(SEARCH_TERMS)})
    results = resp.json().get("results", []) if resp.status_code == 200 else []
    if not results:
        return {}
    entry = random.choice(results[:5])
    return {
        "scientific_name": entry["scientific_name"],
        "vernacular_name": entry["vernacular_name"],
        "category_norway": entry["category_norway"],
        "category_svalbard": entry["category_svalbard"],
    }


def make_observation(observer: SimObserver, species: dict) -> dict:
    now = time.localtime()
    return {
        "species": species,
        "position": {"lat": round(observer.lat, 6), "lon": round(observer.lon, 6)},
        "accuracy_m": random.choice(ACCURACY_CHOICES_M),
        "observed_on": time.strftime("%Y-%m-%d", now),
        "observed_at": time.strftime("%H:%M", now),
        "locality": f"{observer.name} transect",
        "comment": random.choice(["", "", "several individuals", "near the path", "in flower"]),
    }


async def run_observer(
    client: httpx.AsyncClient,
    observer: SimObserver,
    server_url: str,
    per_minute: float,
    duration_seconds: float,
) -> None:
    """Simulate one person recording, sometimes correcting or deleting an entry."""
    interval = 60.0 / per_minute
    end_time = time.monotonic() + duration_seconds
    mine: list[int] = []

    while time.monotonic() < end_time:
        move_observer(observer)
        try:
            species = await pick_species(client, server_url)
            resp = await client.post(f"{server_url}/api/v1/observations",
                                     json=make_observation(observer, species))
            if resp.status_code == 201:
                observer.created += 1
                mine.append(resp.json()["local_id"])
            else:
                observer.errors += 1

            roll = random.random()
            if mine and roll < 0.15:
                resp = await client.patch(f"{server_url}/api/v1/observations/{random.choice(mine)}",
                                          json={"comment": "corrected in the field"})
                observer.edited += resp.status_code == 200
            elif mine and roll < 0.2:
                local_id = mine.pop(random.randrange(len(mine)))
                resp = await client.request("DELETE", f"{server_url}/api/v1/observations",
                                            json={"ids": [local_id]})
                observer.deleted += resp.status_code == 200
        except httpx.RequestError:
            observer.errors += 1

        await asyncio.sleep(interval)


async def toggle_connectivity(
    client: httpx.AsyncClient,
    server_url: str,
    every_seconds: float,
    offline_seconds: float,
    duration_seconds: float,
) -> int:
    """Take the instance offline periodically. Returns the number of outages."""
    outages = 0
    end_time = time.monotonic() + duration_seconds
    while time.monotonic() + every_seconds < end_time:
        await asyncio.sleep(every_seconds - offline_seconds)
        await client.post(f"{server_url}/api/v1/sync/offline")
        outages += 1
        print(f"  [{time.strftime('%H:%M:%S')}] offline")
        await asyncio.sleep(offline_seconds)
        resp = await client.post(f"{server_url}/api/v1/sync/online")
        drains = resp.json().get("drains", []) if resp.status_code == 200 else []
        confirmed = sum(len(d.get("confirmed", [])) for d in drains)
        print(f"  [{time.strftime('%H:%M:%S')}] online, {confirmed} queued observations confirmed")
    return outages


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    center_lat, center_lon = args.center
    observers = []
    for i in range(args.observers):
        angle = random.uniform(0, 2 * math.pi)
        dist_km = random.uniform(0, args.radius_km)
        observers.append(SimObserver(
            name=f"observer-{i + 1}",
            lat=center_lat + (dist_km / 111.0) * math.cos(angle),
            lon=center_lon + (dist_km / (111.0 * math.cos(math.radians(center_lat)))) * math.sin(angle),
        ))

    print(f"Starting simulation: {args.observers} observers, {args.per_minute} observations/min each")
    print(f"  Center: {center_lat:.4f}, {center_lon:.4f}")
    print(f"  Duration: {args.duration}s")
    print(f"  Offline: {args.offline_for}s every {args.offline_every}s")
    print(f"  Server: {args.server}")
    print()

    start = time.monotonic()

    async with httpx.AsyncClient(timeout=10.0) as client:
        tasks = [
            run_observer(client, obs, args.server, args.per_minute, args.duration)
            for obs in observers
        ]
        toggler = toggle_connectivity(client, args.server, args.offline_every,
                                      args.offline_for, args.duration)
        *_, outages = await asyncio.gather(*tasks, toggler)

        # Make sure the final state is online so the queue can empty.
        await client.post(f"{args.server}/api/v1/sync/online")

        elapsed = time.monotonic() - start
        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Observations created: {sum(o.created for o in observers)}")
        print(f"  Edited: {sum(o.edited for o in observers)}")
        print(f"  Deleted: {sum(o.deleted for o in observers)}")
        print(f"  Request errors: {sum(o.errors for o in observers)}")
        print(f"  Outages: {outages}")

        try:
            resp = await client.get(f"{args.server}/api/v1/sync/status")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            print(f"\nCould not read sync status: {exc}")
            return
        status = resp.json()
        print("\nQueue state:")
        print(f"  Online: {status['online']}")
        print(f"  Queued: {len(status['queue'])}")
        print(f"  Pending deletions: {status['pending_deletions']}")
        print(f"  Errors: {len(status['errors'])}")


def main():
    parser = argparse.ArgumentParser(description="fieldlog field session simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--observers", type=int, default=3, help="Number of simulated observers")
    parser.add_argument("--duration", type=int, default=120, help="Simulation duration in seconds")
    parser.add_argument("--per-minute", type=float, default=6, help="Observations per minute per observer")
    parser.add_argument("--center", type=str, default="59.9139,10.7522",
                        help="Center lat,lon (default: Oslo)")
    parser.add_argument("--radius-km", type=float, default=2.0, help="Scatter radius in km")
    parser.add_argument("--offline-every", type=float, default=40.0,
                        help="Seconds between connectivity outages")
    parser.add_argument("--offline-for", type=float, default=15.0,
                        help="Length of each outage in seconds")

    args = parser.parse_args()

    # Parse center
    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
