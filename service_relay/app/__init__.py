"""
Moderation relay service package.

The relay sits between operator tooling and polling game servers:
- Admission control: fixed-window rate limiting with a temporary blacklist
- Tenancy: API keys issued per registered game
- Delivery: per-tenant pending action queues, drained at most once
- Audit: bounded command log with archival and webhook notifications

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: JSON file tables and the log webhook client.
- app.actions: Pending action queue.
- app.audit: Command log, rotation and archives.
- app.domain: Request models, tenants, and moderation commands.
- app.ratelimit: Fixed-window limiter and middleware.
"""
