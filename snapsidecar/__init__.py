"""Volume snapshot sidecar controller logic working through a CSI driver, and a JUnit report filter."""

__version__ = "0.1.0"