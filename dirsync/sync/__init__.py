"""Cross-directory synchronization: the engine's moving parts.

- normalizer: raw notifications → ``ChangeEvent``
- debounce: per-principal burst coalescing
- dedup: keyed idempotency / minimum-interval gate for every mutation
- retry: bounded exponential backoff around remote calls
- mapping: primary grant ↔ replica grant lookups
- dispatcher: the single mutation path (dedup → dry-run gate → retry → service)
- orchestrator: reactive group sync and marker maintenance
- propagation: exclusions and expulsions
- exclusivity: at-most-one-of-a-set enforcement and the selection surface
- reconcile: the full-state sweep
"""
