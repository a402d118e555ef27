"""Dependency Bring-up Orchestrator (DBO).

Starts a set of service nodes in dependency order, gating each launch on a
readiness condition of the nodes it depends on:
 - dependency graph with typed edges (started / completed successfully)
 - pluggable readiness probes (process exit, polling command, predicate)
 - a threaded scheduler that launches with maximal parallelism and
   cancels the rest of the run on the first failure
 - a machine-readable run report

Launching is delegated to an invoker (Docker or local processes).
"""
