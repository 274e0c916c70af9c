"""Poll pipeline: registry, poller, scorer, report, curator."""
