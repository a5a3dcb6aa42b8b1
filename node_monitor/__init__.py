"""Node status monitor.

Polls node status endpoints, debounces their up/down readings into a stable
Online/Offline state and tells Telegram subscribers when that state changes.
All subscription and status bookkeeping lives in a single actor task
(`node_monitor.book_keeping`) fed through a mailbox.
"""
