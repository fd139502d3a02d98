from .sinks import DatabaseSink, NullSink, RedisSink, ResultSink, sink_from_settings

__all__ = ["DatabaseSink", "NullSink", "RedisSink", "ResultSink", "sink_from_settings"]
