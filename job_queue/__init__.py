"""
Job Queue — Durable work distribution between triggers and handlers.

- Producers (cron, event rules, API) create a Job row, then PUSH an envelope
- Consumers POP envelopes and run the handler registered for the job type
- Failures retry up to a ceiling, then land in the dead-letter list
- Supports Redis lists (production) and in-memory deques (dev/tests)
"""
