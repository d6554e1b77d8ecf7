"""autoscope: discover autometrics-instrumented functions and run a local Prometheus for them."""

__version__ = "0.4.0"

__all__ = ["__version__"]
