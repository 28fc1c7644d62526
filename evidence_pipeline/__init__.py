"""Market evidence pipeline core package.

Components, leaf to root:
- freshness: observation age to weight bucket
- fetcher: robots.txt gate, user-agent rotation, retry/backoff, anti-bot detection
- oracle / extraction / connector / sources: per-source fetch, extract, normalize
- store: record store contract and in-memory implementation
- change_detector, trends, proposals: analysis passes over persisted evidence
- orchestrator: bounded worker pool running connectors and sequencing the passes
- reporter: Excel exports and Plotly dashboards
- logger / exceptions: structured logging and the exception hierarchy
"""

__version__ = "1.0.0"
