import logging

from tutor.logging_utils import (
    build_log_handlers,
    configure_logging,
    get_log_file_path,
    resolve_log_level,
)


def test_resolve_log_level_reads_environment(monkeypatch):
    monkeypatch.setenv("TUTOR_LOG_LEVEL", "debug")
    assert resolve_log_level() == logging.DEBUG

    monkeypatch.setenv("TUTOR_LOG_LEVEL", "nonsense")
    assert resolve_log_level() == logging.INFO

    monkeypatch.delenv("TUTOR_LOG_LEVEL")
    assert resolve_log_level(default=logging.WARNING) == logging.WARNING
    assert resolve_log_level(logging.ERROR) == logging.ERROR


def test_configure_logging_does_not_stack_file_handlers(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    previous_level = root.level
    try:
        configure_logging(logging.INFO, handlers=build_log_handlers(tmp_path))
        configure_logging(logging.INFO, handlers=build_log_handlers(tmp_path))

        log_file = str(get_log_file_path(tmp_path))
        file_handlers = [
            handler for handler in root.handlers if getattr(handler, "baseFilename", None) == log_file
        ]
        assert len(file_handlers) == 1
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(previous_level)
