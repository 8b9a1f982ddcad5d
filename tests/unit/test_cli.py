import logging
from logging.handlers import RotatingFileHandler

import pytest

from KaleRig.cli import build_farmers
from KaleRig.config import _validate_config
from KaleRig.logging_config import configure_logging


def test_build_farmers_registers_secrets(ledger):
    cfg = _validate_config({"farmers": [{"secret": "saaa", "stake": 500}, {"secret": "sbbb", "harvest_only": True}]})
    farmers = build_farmers(cfg, ledger)
    assert farmers.addresses() == ["GSAAA", "GSBBB"]
    assert farmers["GSAAA"].stake == 500
    assert farmers["GSBBB"].harvest_only is True


def test_build_farmers_rejects_duplicates(ledger):
    cfg = _validate_config({"farmers": [{"secret": "saaa"}, {"secret": "saaa"}]})
    with pytest.raises(ValueError):
        build_farmers(cfg, ledger)


def test_configure_logging_adds_rotating_file(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    log_file = tmp_path / "logs" / "kalerig.log"
    try:
        configure_logging("WARNING", str(log_file), verbose=True)
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("KaleRig").level == logging.DEBUG
        assert log_file.parent.is_dir()
    finally:
        for h in list(root.handlers):
            if h not in before:
                h.close()
                root.removeHandler(h)
        root.setLevel(level)
        logging.getLogger("KaleRig").setLevel(logging.NOTSET)
