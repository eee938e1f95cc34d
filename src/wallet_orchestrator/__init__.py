"""
wallet_orchestrator: run user scripts against many wallets in isolated worker processes.

Subpackages:
- tasks/: task model, registry and the admission-controlled scheduler
- worker/: message protocol, parent-side process handle and the child runtime
- batch/: concurrent per-wallet batch runner with retries
- events/: event relay (observer fan-out)
- cli/, connectors/: console front-end
"""
