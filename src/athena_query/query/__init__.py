"""Query model, execution protocol and result decoding."""
