"""
Dispatch — Polling claim/lease delivery of grouped turns.

There is no broker. Message groups in the store are the queue:
- PeriodicWorker runs each sweep on a timer
- Dispatcher claims ready groups with a conditional update and hands
  each to the responder, acknowledging on success
- Lease expiry returns unacknowledged groups to the queue
"""
