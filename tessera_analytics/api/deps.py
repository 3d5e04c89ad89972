from starlette.requests import HTTPConnection

from tessera_analytics.container import AnalyticsServices


def get_services(connection: HTTPConnection) -> AnalyticsServices:
    """The container the app was built with (works for HTTP and WebSocket)."""
    return connection.app.state.services
