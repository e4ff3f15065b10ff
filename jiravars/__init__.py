"""jiravars -- export Jira search results as Prometheus gauges."""

__version__ = "0.3.0"
