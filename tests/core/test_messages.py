"""Tests for operation messages."""

from testplane.core.messages import Message, has_errors


class TestMessage:
    def test_given_factories_when_called_then_set_severity(self) -> None:
        # When
        info = Message.info("synced")
        warning = Message.warning("slow")
        error = Message.error("Tester dusk not found.")

        # Then
        assert info == Message("info", "synced")
        assert warning.severity == "warning"
        assert error.severity == "error"
        assert error.body == "Tester dusk not found."

    def test_given_errors_in_list_when_has_errors_then_true(self) -> None:
        # Given
        messages = [Message.info("a"), Message.error("b")]

        # When / Then
        assert has_errors(messages) is True
        assert has_errors([Message.warning("c")]) is False
        assert has_errors([]) is False
