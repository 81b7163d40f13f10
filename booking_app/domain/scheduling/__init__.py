"""
Scheduling Domain

Client-meeting booking: calendar tokens, busy-interval fetching, slot
suggestion, availability across staff and rooms, and the booking lifecycle
(propose, confirm, cancel, reschedule) with calendar and CRM sync.

Structure:
├── errors.py               # Error taxonomy
├── time_calculator.py      # Pure slot suggestion engine
├── providers/              # Google / Microsoft calendar adapters
├── token_service.py        # OAuth token refresh and retry
├── busy_fetcher.py         # Busy intervals for one connection
├── availability_service.py # Multi-participant availability
├── state_machine.py        # Meeting status transitions
├── lifecycle_service.py    # Propose / confirm / manage
├── progress_log.py         # Per-run step log
├── public_service.py       # Client-facing booking link views
├── repository.py           # Database queries
├── schemas.py              # Request / response models
├── router.py               # Staff endpoints
└── public_router.py        # Public booking endpoints
"""
