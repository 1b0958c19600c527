"""Health subsystem: probes, snapshot models, concurrent aggregator."""

from .aggregator import HealthAggregator
from .models import HealthSnapshot, OverallStatus, ProbeResult
from .probes import SnapshotCache, hydrate_umf_cache
