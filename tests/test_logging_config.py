import logging

from crmsync import logging_config


def test_configure_logging_adds_one_file_handler(tmp_path):
    log_path = tmp_path / "logs" / "crmsync.log"
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        assert logging_config.configure_logging(log_path=log_path) == log_path
        logging_config.configure_logging(log_path=log_path)

        added = [handler for handler in root.handlers if handler not in before]
        assert len(added) == 1
        assert logging_config.get_log_path() == log_path

        logging.getLogger("crmsync.test").warning("[Sync] hello")
        added[0].flush()
        assert "[Sync] hello" in log_path.read_text(encoding="utf-8")
    finally:
        for handler in [handler for handler in root.handlers if handler not in before]:
            root.removeHandler(handler)
            handler.close()
