"""Pure domain layer: clock, DTOs, net-metering math, authorization policy."""
