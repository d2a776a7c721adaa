"""Checker service - performs HTTP, HTTPS, TCP, ping, and SSL probes."""
import asyncio
import re
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

import httpx
from cryptography import x509

CHECK_TYPES = ("http", "https", "tcp", "ping", "ssl")

PING_COUNT = 3

# Certificates closer to expiry than this fail the ssl probe
SSL_EXPIRY_FAIL_DAYS = 14


@dataclass
class ProbeResult:
    """Pass/fail result of a single probe."""
    is_successful: bool
    response_time_ms: Optional[int] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    ssl_expiry_days: Optional[int] = None


def _elapsed_ms(start: datetime) -> int:
    return int((datetime.now() - start).total_seconds() * 1000)


def split_host_port(target: str, default_port: Optional[int] = None) -> Tuple[str, Optional[int]]:
    """Extract ``host`` and ``port`` from a URL, ``host:port`` or bare hostname."""
    if "://" in target:
        target = target.split("://", 1)[1]
    target = target.split("/", 1)[0]

    host, port = target, default_port
    if ":" in target:
        host, port_str = target.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            host, port = target, default_port
    return host, port


class CheckerService:
    """Runs one probe for a monitoring check.

    ``check`` never raises: connection errors, timeouts and unsupported types
    all come back as a failed ``ProbeResult`` with an error message.
    """

    def __init__(self, timeout: int = 30, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def check(
        self,
        check_type: str,
        target: str,
        timeout_seconds: Optional[int] = None,
        expected_status_code: Optional[int] = None,
    ) -> ProbeResult:
        """Perform a probe based on check type."""
        if check_type not in CHECK_TYPES:
            return ProbeResult(is_successful=False, error_message=f"Unsupported check type: {check_type}")
        timeout = timeout_seconds or self.timeout

        if check_type in ("http", "https"):
            return await self._check_http(target, timeout, expected_status_code, secure=check_type == "https")
        elif check_type == "tcp":
            return await self._check_tcp(target, timeout)
        elif check_type == "ping":
            return await self._check_ping(target, timeout)
        return await self._check_ssl(target, timeout)

    async def _check_http(
        self,
        target: str,
        timeout: int,
        expected_status_code: Optional[int],
        secure: bool = False,
    ) -> ProbeResult:
        """GET the target; succeeds on the expected status, or any 2xx/3xx when none is configured."""
        # Ensure URL has protocol
        if not target.startswith("http"):
            target = f"{'https' if secure else 'http'}://{target}"

        start = datetime.now()
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=True, transport=self.transport
            ) as client:
                response = await client.get(target)
        except httpx.TimeoutException:
            return ProbeResult(
                is_successful=False,
                response_time_ms=_elapsed_ms(start),
                error_message=f"Timeout after {timeout} seconds",
            )
        except httpx.HTTPError as e:
            return ProbeResult(
                is_successful=False,
                response_time_ms=_elapsed_ms(start),
                error_message=f"Connection error: {e}",
            )

        response_time = _elapsed_ms(start)
        if expected_status_code:
            ok = response.status_code == expected_status_code
            error = None if ok else f"Expected status {expected_status_code}, got {response.status_code}"
        else:
            ok = 200 <= response.status_code < 400
            error = None if ok else f"HTTP {response.status_code}"

        return ProbeResult(
            is_successful=ok,
            response_time_ms=response_time,
            status_code=response.status_code,
            error_message=error,
        )

    async def _check_tcp(self, target: str, timeout: int) -> ProbeResult:
        """Open a TCP connection to ``host:port``."""
        host, port = split_host_port(target)
        if port is None:
            return ProbeResult(is_successful=False, error_message="TCP check requires hostname:port format")

        start = datetime.now()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeResult(
                is_successful=False,
                response_time_ms=_elapsed_ms(start),
                error_message=f"TCP connection to {host}:{port} timed out",
            )
        except OSError as e:
            return ProbeResult(
                is_successful=False,
                response_time_ms=_elapsed_ms(start),
                error_message=f"TCP connection to {host}:{port} failed - {e}",
            )

        response_time = _elapsed_ms(start)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult(is_successful=True, response_time_ms=response_time)

    async def _check_ping(self, target: str, timeout: int) -> ProbeResult:
        """Ping the host a few times; succeeds when a majority of replies arrive."""
        host, _ = split_host_port(target)

        try:
            # -c: count, -i 1: one second apart, -W: per-ping timeout
            proc = await asyncio.create_subprocess_exec(
                "ping", "-c", str(PING_COUNT), "-i", "1", "-W", str(timeout), host,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ProbeResult(is_successful=False, error_message=f"Ping unavailable: {e}")

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=PING_COUNT + timeout + 5)
        except asyncio.TimeoutError:
            proc.kill()
            return ProbeResult(is_successful=False, error_message="Ping timeout")

        # Example line: "64 bytes from 8.8.8.8: icmp_seq=1 ttl=117 time=14.2 ms"
        times = [float(m.group(1)) for m in re.finditer(r"icmp_seq=\d+.*?time=(\d+\.?\d*)\s*ms", stdout.decode())]
        avg = int(sum(times) / len(times)) if times else None

        if len(times) * 2 <= PING_COUNT:
            return ProbeResult(
                is_successful=False,
                response_time_ms=avg,
                error_message=f"{len(times)}/{PING_COUNT} pings succeeded",
            )
        return ProbeResult(is_successful=True, response_time_ms=avg)

    async def _check_ssl(self, target: str, timeout: int) -> ProbeResult:
        """Check the certificate served by the target has not expired or nearly so."""
        host, port = split_host_port(target, default_port=443)

        start = datetime.now()
        try:
            # Socket operations are blocking
            expiry_days = await asyncio.wait_for(
                asyncio.to_thread(self._get_ssl_expiry, host, port, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return ProbeResult(is_successful=False, error_message="SSL check timeout")
        except (OSError, ValueError) as e:
            return ProbeResult(
                is_successful=False,
                response_time_ms=_elapsed_ms(start),
                error_message=f"SSL check failed - {e}",
            )

        response_time = _elapsed_ms(start)
        if expiry_days is None:
            return ProbeResult(is_successful=False, response_time_ms=response_time,
                               error_message="Could not get certificate")
        if expiry_days <= 0:
            error = "Certificate expired"
        elif expiry_days <= SSL_EXPIRY_FAIL_DAYS:
            error = f"Certificate expires in {expiry_days} days"
        else:
            error = None
        return ProbeResult(
            is_successful=error is None,
            response_time_ms=response_time,
            error_message=error,
            ssl_expiry_days=expiry_days,
        )

    def _get_ssl_expiry(self, host: str, port: int, timeout: int) -> Optional[int]:
        """Get SSL certificate expiry in days (blocking operation)."""
        # Read the expiry date only; trust is not validated
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        with socket.create_connection((host, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=host) as ssock:
                # getpeercert() returns an empty dict under CERT_NONE
                cert_der = ssock.getpeercert(binary_form=True)
        if not cert_der:
            return None

        cert = x509.load_der_x509_certificate(cert_der)
        return days_until(cert.not_valid_after_utc)


def days_until(expiry: datetime, now: Optional[datetime] = None) -> int:
    """Whole days from ``now`` until ``expiry`` (negative once expired)."""
    now = now or datetime.now(timezone.utc)
    return (expiry - now).days
