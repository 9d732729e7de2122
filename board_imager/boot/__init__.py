"""Bootloader configuration inside the populated root filesystem."""
