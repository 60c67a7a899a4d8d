"""
Delivery queue — decouples WhatsApp traffic from the request path.

- Enqueuer WRITES pending rows (outbound sends, inbound engine turns)
- Dispatcher CLAIMS rows atomically and drives them to done or dead
- Failed rows go back to pending with backoff, exhausted rows are dead-lettered
- Monitoring READS aggregates over the store
"""
