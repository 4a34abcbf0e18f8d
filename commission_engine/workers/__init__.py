"""Background workers: scheduled reconciliation and outbox delivery."""
