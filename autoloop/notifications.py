"""
Desktop notifications for autoloop.

Uses notify-send (freedesktop compliant) for notifications.
Works with mako, dunst, GNOME, KDE notification daemons.
"""

import subprocess
import shutil
import logging

logger = logging.getLogger(__name__)


VALID_URGENCIES = ("low", "normal", "critical")

MAX_NOTIFICATION_LENGTH = 200


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    # Truncate long messages to keep notifications readable
    if len(message) > MAX_NOTIFICATION_LENGTH:
        message = message[:MAX_NOTIFICATION_LENGTH] + "..."

    try:
        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "autoloop",
            title,
            message
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def notify_tripped(consecutive_failures: int, last_task_id: str | None):
    """Notify that the circuit breaker halted the loop."""
    where = f" (last task: {last_task_id})" if last_task_id else ""
    notify(
        "autoloop: breaker tripped",
        f"{consecutive_failures} iterations without progress{where}. Run 'loop reset' after investigating.",
        "critical"
    )


def notify_complete(completed: int):
    """Notify that the queue drained."""
    noun = "task" if completed == 1 else "tasks"
    notify(
        "autoloop: queue drained",
        f"No eligible tasks left ({completed} {noun} complete)",
        "low"
    )


def notify_starved(task_ids: list[str]):
    """Notify that tasks have waited past the starvation threshold."""
    notify(
        "autoloop: starving tasks",
        f"Waiting too long: {', '.join(task_ids)}",
        "normal"
    )
