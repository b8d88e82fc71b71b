"""Lumo: a conversational assistant that represents its owner to visitors.

Architecture Overview
=====================

Every inbound message (messaging webhook or web chat) runs through one
**LangGraph** state graph (``lumo/pipeline.py``):

1. **screen**: silent block list, abuse block list, spam-burst counter.
2. **register**: upsert the user; attachments are acknowledged without the
   model; the inbound turn is persisted.
3. **load_context**: the last 15 turns plus up to 10 flagged ones.
4. **classify**: regex context tags.  Prompt-injection attempts get a fixed
   deflection (and repeat offenders an automatic block); the model is never
   called for them.
5. **scheduling**: open slots and the user's appointments, only when the
   conversation is about appointments.
6. **generate**: a system prompt assembled from tag-selected fragments, sent
   to the chat model with structured (JSON) output.
7. **act**: bookings/cancellations (optimistic locking), interaction log,
   admin notifications.
8. **deliver**: leak guard, outbound delivery, persistence of the reply.

Key Design Decisions
--------------------
- **LLM**: any LangChain chat model; ``ChatAnthropic`` by default.  Without an
  API key the assistant answers in demo mode.
- **Bookings**: every slot write is a compare-and-swap on (status, version),
  so concurrent bookings of one slot have exactly one winner.
- **Abuse counters**: in-process fixed-window counters; they reset on restart,
  while blocks themselves are persisted.
- **Storage**: SQLAlchemy when ``DATABASE_URL`` is set, in-memory otherwise.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``lumo/pipeline.py``: LangGraph StateGraph orchestrator
- ``lumo/classifier.py``: context tags and injection heuristics
- ``lumo/prompts.py``: fragment catalog and prompt assembly
- ``lumo/guard.py``: outbound leak scan
- ``lumo/config.py``: centralized configuration from environment variables
- ``lumo/models.py``: domain records
- ``lumo/storage/``: storage interface, in-memory and SQLAlchemy backends
- ``lumo/services/``: conversation history, LLM gateway, scheduler,
  delivery, abuse counters, metrics
- ``lumo/api/``: FastAPI routes and Pydantic schemas
- ``lumo/server.py``: FastAPI application
- ``lumo/main.py``: CLI chat interface
"""
