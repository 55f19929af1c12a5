"""
ServiceBell Device CLI - Command-line interface for the notification receiver.

Commands:
- run: Start the device runner (change stream, bridge, sync client)
- sync: Pull queued notifications once and exit
- status: Show locally unacknowledged notifications
"""
