from .poller import PollOutcome, TicketPoller, enqueue_ticket_poll, poll_delay, poll_job_id

__all__ = ["PollOutcome", "TicketPoller", "enqueue_ticket_poll", "poll_delay", "poll_job_id"]
