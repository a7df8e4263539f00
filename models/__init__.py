from .target import Target
from .scrape_result import ArrivalRow, LoopPhase, Outcome, PerfMetrics, ScrapeResult

__all__ = [
    'Target',
    'ArrivalRow',
    'LoopPhase',
    'Outcome',
    'PerfMetrics',
    'ScrapeResult',
]
