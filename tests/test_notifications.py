"""Tests for autoloop.notifications module."""

from unittest.mock import patch, MagicMock

from autoloop.notifications import notify, notify_tripped


class TestNotify:
    """Test notify function."""

    @patch("autoloop.notifications.shutil.which", return_value=None)
    @patch("autoloop.notifications.subprocess.run")
    def test_skips_without_notify_send(self, mock_run, mock_which):
        notify("title", "body")
        mock_run.assert_not_called()

    @patch("autoloop.notifications.shutil.which", return_value="/usr/bin/notify-send")
    @patch("autoloop.notifications.subprocess.run")
    def test_truncates_long_message(self, mock_run, mock_which):
        mock_run.return_value = MagicMock(returncode=0, stderr="")
        notify("title", "x" * 500)
        message = mock_run.call_args[0][0][-1]
        assert message == "x" * 200 + "..."

    @patch("autoloop.notifications.shutil.which", return_value="/usr/bin/notify-send")
    @patch("autoloop.notifications.subprocess.run")
    def test_invalid_urgency(self, mock_run, mock_which, caplog):
        mock_run.return_value = MagicMock(returncode=0, stderr="")
        notify("title", "body", urgency="extreme")
        assert "normal" in mock_run.call_args[0][0]
        assert "Invalid urgency" in caplog.text


class TestNotifyTripped:
    """Test notify_tripped function."""

    @patch("autoloop.notifications.notify")
    def test_critical(self, mock_notify):
        notify_tripped(3, "T7")
        title, message, urgency = mock_notify.call_args[0]
        assert "T7" in message
        assert urgency == "critical"
