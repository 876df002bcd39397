"""Background workers for mailbox sync runs."""
