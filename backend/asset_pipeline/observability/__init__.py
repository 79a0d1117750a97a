from asset_pipeline.observability.tracing import TracingConfig, traced

__all__ = ["TracingConfig", "traced"]
