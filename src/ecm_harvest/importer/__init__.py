"""Resumable folder import: discover folders, expand months, store configs."""
