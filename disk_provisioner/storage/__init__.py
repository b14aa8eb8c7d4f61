"""Disk operations: command execution, planning and step execution."""
