#!/usr/bin/env python3
"""Post-deploy checks for the arena economy service: liveness, readiness, VIP room config."""

from __future__ import annotations

import os
import time
from typing import Any, Callable

import httpx


def fail(message: str) -> None:
    print(f"ERROR: {message}")
    raise SystemExit(1)


def normalize_base_url(base_url: str) -> str:
    url = (base_url or "").strip().rstrip("/")
    for suffix in ("/api/v1", "/api"):
        if url.endswith(suffix):
            return url[: -len(suffix)]
    return url


def expect_status(expected: str) -> Callable[[dict[str, Any]], str | None]:
    def check(data: dict[str, Any]) -> str | None:
        actual = data.get("status")
        if actual != expected:
            return f"status mismatch: expected '{expected}', got '{actual}'"
        return None

    return check


def expect_active_room(data: dict[str, Any]) -> str | None:
    if not data.get("isActive"):
        return f"room {data.get('roomType')} is not active"
    if not data.get("entryFee"):
        return "room config has no entry fee"
    return None


def check_endpoint(
    client: httpx.Client,
    path: str,
    check: Callable[[dict[str, Any]], str | None],
    *,
    retries: int,
    retry_delay: float,
) -> None:
    last_error = None
    for attempt in range(retries + 1):
        try:
            response = client.get(path)
            if response.status_code != 200:
                raise RuntimeError(f"{path} returned HTTP {response.status_code}. Body: {response.text[:300]}")
            data = response.json()
            if not isinstance(data, dict):
                raise RuntimeError(f"{path} returned JSON that is not an object.")
            problem = check(data)
            if problem:
                raise RuntimeError(f"{path} {problem}.")
            print(f"OK: {path}")
            return
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            last_error = f"{path} request failed: {exc}"
        except ValueError:
            last_error = f"{path} did not return valid JSON."
        except RuntimeError as exc:
            last_error = str(exc)

        if attempt < retries:
            wait = retry_delay * (attempt + 1)
            print(f"WARN: {last_error} (retry {attempt + 1}/{retries} in {wait:.1f}s)")
            time.sleep(wait)

    fail(last_error or f"{path} check failed.")


def main() -> None:
    base_url = normalize_base_url(os.getenv("ECONOMY_BASE_URL", ""))
    if not base_url:
        fail("Missing ECONOMY_BASE_URL environment variable.")

    timeout = float(os.getenv("HEALTHCHECK_TIMEOUT_SECONDS", "25"))
    retries = int(os.getenv("HEALTHCHECK_RETRIES", "4"))
    retry_delay = float(os.getenv("HEALTHCHECK_RETRY_DELAY_SECONDS", "4"))
    api_prefix = os.getenv("API_V1_PREFIX", "/api/v1").rstrip("/")

    print(f"Healthcheck config: base_url={base_url} timeout={timeout}s retries={retries} retry_delay={retry_delay}s")

    headers = {"User-Agent": "arena-economy-healthcheck/1.0"}
    with httpx.Client(base_url=base_url, timeout=timeout, headers=headers) as client:
        check_endpoint(client, "/healthz", expect_status("ok"), retries=retries, retry_delay=retry_delay)
        check_endpoint(client, "/readyz", expect_status("ready"), retries=retries, retry_delay=retry_delay)
        check_endpoint(
            client,
            f"{api_prefix}/game/rooms/vip/config",
            expect_active_room,
            retries=retries,
            retry_delay=retry_delay,
        )
    print("SUCCESS: all health checks passed.")


if __name__ == "__main__":
    main()
