"""
Regulation source poller.

Polls the government news and regulation pages configured per jurisdiction,
scores them, reports problematic jurisdictions, and curates the registry.

Modules:
    ingest.registry - Source registry load/save and write lock
    ingest.poller - Concurrent fetching with timeouts and a global deadline
    ingest.scorer - Per-source scores and per-jurisdiction aggregation
    ingest.report - Report building, classification and artifact I/O
    ingest.curator - Registry curation with reversible diffs
    ingest.export - CSV export of the registry
    ingest.health - Source health across runs
    ingest.alerts - Alert report per run
    ingest.notify - Broken-link e-mail
    ingest.coordinator - run_poll_cycle() entry point
    cli - Command-line interface
"""

__version__ = "1.0.0"
