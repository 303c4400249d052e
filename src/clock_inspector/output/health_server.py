"""
Health Monitoring HTTP Server for clock-inspector.

Provides a simple HTTP endpoint for monitoring the correlation engine:
packet counts, continuity errors, findings and drift trends. Useful for
integration with Prometheus, Grafana, or simple health checks.

Endpoints:
    GET /health     - Basic health check (200 OK if running)
    GET /status     - JSON engine status
    GET /metrics    - Prometheus-compatible metrics

Usage:
    from clock_inspector.output.health_server import HealthServer

    server = HealthServer(port=8080)
    server.set_engine(correlation_engine)
    server.start()
"""

import json
import logging
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class HealthRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for health endpoints."""

    # Class-level reference to status callback
    get_status: Optional[Callable[[], Dict[str, Any]]] = None

    def log_message(self, format, *args):
        """Suppress default HTTP logging."""
        pass

    def do_GET(self):
        """Handle GET requests."""
        if self.path == '/health':
            self._handle_health()
        elif self.path == '/status':
            self._handle_status()
        elif self.path == '/metrics':
            self._handle_metrics()
        else:
            self.send_error(404, "Not Found")

    def _handle_health(self):
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain')
        self.end_headers()
        self.wfile.write(b'OK\n')

    def _send(self, code: int, content_type: str, body: str):
        self.send_response(code)
        self.send_header('Content-Type', content_type)
        self.end_headers()
        self.wfile.write(body.encode())

    def _handle_status(self):
        """Return JSON engine status."""
        if not self.get_status:
            self._send(503, 'application/json', json.dumps({'error': 'No engine connected'}))
            return
        try:
            status = self.get_status()
        except Exception as e:
            logger.warning(f"Status request failed: {e}")
            self._send(500, 'application/json', json.dumps({'error': str(e)}))
            return
        self._send(200, 'application/json', json.dumps(status, indent=2))

    def _handle_metrics(self):
        """Return Prometheus-compatible metrics."""
        if not self.get_status:
            self._send(503, 'text/plain', '# No engine connected\n')
            return
        try:
            metrics = format_prometheus_metrics(self.get_status())
        except Exception as e:
            logger.warning(f"Metrics request failed: {e}")
            self._send(500, 'text/plain', f'# Error: {e}\n')
            return
        self._send(200, 'text/plain; version=0.0.4', metrics)


def format_prometheus_metrics(status: Dict[str, Any]) -> str:
    """Format engine status as Prometheus metrics."""
    lines = [
        '# HELP clock_inspector_packets_total Transport packets processed',
        '# TYPE clock_inspector_packets_total counter',
        f'clock_inspector_packets_total {status.get("packets", 0)}',
        '',
        '# HELP clock_inspector_malformed_packets_total Packets skipped as malformed',
        '# TYPE clock_inspector_malformed_packets_total counter',
        f'clock_inspector_malformed_packets_total {status.get("malformed_packets", 0)}',
        '',
        '# HELP clock_inspector_trend_reports_total Trend reports produced',
        '# TYPE clock_inspector_trend_reports_total counter',
        f'clock_inspector_trend_reports_total {status.get("trend_reports", 0)}',
        '',
        '# HELP clock_inspector_uptime_seconds Engine uptime in seconds',
        '# TYPE clock_inspector_uptime_seconds gauge',
        f'clock_inspector_uptime_seconds {status.get("uptime_seconds", 0):.1f}',
        '',
        '# HELP clock_inspector_state Engine state (1=IDLE, 2=RUNNING, 3=STOPPED)',
        '# TYPE clock_inspector_state gauge',
    ]

    state_map = {'IDLE': 1, 'RUNNING': 2, 'STOPPED': 3}
    lines.append(f'clock_inspector_state {state_map.get(status.get("state", "IDLE"), 0)}')

    findings = status.get('findings', {})
    if findings:
        lines.extend([
            '',
            '# HELP clock_inspector_findings_total Timing findings by kind',
            '# TYPE clock_inspector_findings_total counter',
        ])
        for kind, count in findings.items():
            lines.append(f'clock_inspector_findings_total{{kind="{kind}"}} {count}')

    pids = status.get('pids', {})
    if pids:
        lines.extend([
            '',
            '# HELP clock_inspector_continuity_errors_total Continuity counter errors per PID',
            '# TYPE clock_inspector_continuity_errors_total counter',
        ])
        for pid, entry in pids.items():
            lines.append(f'clock_inspector_continuity_errors_total{{pid="{pid}"}} '
                         f'{entry.get("continuity_errors", 0)}')

    trends = [t for t in status.get('trends', []) if t.get('has_model')]
    if trends:
        lines.extend([
            '',
            '# HELP clock_inspector_trend_slope Timestamp clock seconds per reference second',
            '# TYPE clock_inspector_trend_slope gauge',
        ])
        for t in trends:
            lines.append(f'clock_inspector_trend_slope{{pid="0x{t["pid"]:04x}",clock="{t["clock"]}"}} '
                         f'{t["slope"]:.12f}')
        lines.extend([
            '',
            '# HELP clock_inspector_trend_r_squared Coefficient of determination of the trend fit',
            '# TYPE clock_inspector_trend_r_squared gauge',
        ])
        for t in trends:
            if t.get('r_squared') is not None:
                lines.append(f'clock_inspector_trend_r_squared{{pid="0x{t["pid"]:04x}",clock="{t["clock"]}"}} '
                             f'{t["r_squared"]:.9f}')

    lines.append('')
    return '\n'.join(lines)


class HealthServer:
    """
    HTTP server for health monitoring.

    Runs in a background thread and serves the engine's get_status().
    """

    def __init__(self, port: int = 8080, bind_address: str = '0.0.0.0'):
        """
        Initialize the health server.

        Args:
            port: HTTP port to listen on
            bind_address: Address to bind to (default: all interfaces)
        """
        self.port = port
        self.bind_address = bind_address
        self.server: Optional[HTTPServer] = None
        self.thread: Optional[threading.Thread] = None
        self.engine = None
        self._running = False

    def set_engine(self, engine):
        """
        Connect to a CorrelationEngine for status reporting.

        Args:
            engine: CorrelationEngine instance
        """
        self.engine = engine
        HealthRequestHandler.get_status = self._get_status

    def _get_status(self) -> Dict[str, Any]:
        if not self.engine:
            return {'error': 'No engine connected'}
        return self.engine.get_status()

    def start(self) -> bool:
        """
        Start the health server in a background thread.

        Returns:
            True if listening
        """
        if self._running:
            logger.warning("Health server already running")
            return True

        try:
            self.server = HTTPServer(
                (self.bind_address, self.port),
                HealthRequestHandler
            )
        except OSError as e:
            logger.error(f"Failed to start health server: {e}")
            return False

        # handle_request() must not block forever
        self.server.timeout = 1.0
        self._running = True

        self.thread = threading.Thread(
            target=self._serve,
            name="HealthServer",
            daemon=True
        )
        self.thread.start()

        logger.info(f"Health server started on http://{self.bind_address}:{self.port}")
        logger.info("  GET /health  - Health check")
        logger.info("  GET /status  - JSON status")
        logger.info("  GET /metrics - Prometheus metrics")
        return True

    def _serve(self):
        """Server loop (runs in background thread)."""
        while self._running:
            try:
                self.server.handle_request()
            except OSError as e:
                if self._running:
                    logger.debug(f"Health server request error: {e}")

    def stop(self):
        """Stop the health server."""
        self._running = False
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None
        if self.server:
            self.server.server_close()
            self.server = None
        logger.info("Health server stopped")
