"""Shared configuration, exceptions and clock for the billing module."""
