from busfinder.monitoring.metrics import get_metrics, record_request

__all__ = ["get_metrics", "record_request"]
