"""Task orchestration in front of a headless CLI agent.

Why threads and not asyncio?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every unit of work is one external process whose stdout is read until it
closes. A fixed pool of worker threads maps one-to-one onto "one task, one
process", blocking pipe reads need no event-loop integration, and the
transport layer in front of this package can be sync or async without caring.
Shared state (task table, queue, session table) sits behind plain locks, each
operation being a single critical section.
"""
