"""Concurrent-write consistency probe for a live Graph application object.

This package creates many password credentials concurrently on one
application (``harness``), waits and re-reads the application to confirm
they are all visible (``verifier``), and renders the outcome (``report``).

Entry point: ``graph_sanity.probe.runner.run_probe()``
"""
