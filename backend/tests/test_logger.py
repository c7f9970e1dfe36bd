import json
import logging
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from utils.logger import JSONFormatter, TextFormatter, get_logger  # noqa: E402


def test_keyword_fields_reach_the_record(caplog):
    logger = get_logger("trade_lifecycle")
    with caplog.at_level(logging.INFO, logger="trade_lifecycle"):
        logger.info("Trade opened", agent_id="agent-a", price=0.55)
        logger.debug("Intent skipped", reason="duplicate")

    assert len(caplog.records) == 1
    record = caplog.records[0]
    assert record.fields == {"agent_id": "agent-a", "price": 0.55}
    # Location points at this test, not at the wrapper.
    assert record.module == "test_logger"


def test_json_and_text_formatters(caplog):
    logger = get_logger("copy_engine")
    with caplog.at_level(logging.WARNING, logger="copy_engine"):
        try:
            raise RuntimeError("queue closed")
        except RuntimeError:
            logger.error("Command failed", command="IntentCommand", exc_info=True)

    record = caplog.records[0]
    entry = json.loads(JSONFormatter().format(record))
    assert entry["component"] == "copy_engine"
    assert entry["level"] == "ERROR"
    assert entry["data"] == {"command": "IntentCommand"}
    assert "RuntimeError: queue closed" in entry["exception"]

    line = TextFormatter("%(levelname)s %(message)s").format(record)
    assert line.startswith("ERROR Command failed | command=IntentCommand")
