import json
import logging

import pytest
import structlog
from pydantic import ValidationError

from config import Settings, configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    structlog.reset_defaults()


def _flush():
    for handler in logging.getLogger().handlers:
        handler.flush()


class TestSettings:

    def test_validators_normalize_case(self):
        s = Settings(_env_file=None, log_level="debug", log_format="JSON", embedding_provider="HASH")
        assert s.log_level == "DEBUG"
        assert s.log_format == "json"
        assert s.embedding_provider == "hash"

    @pytest.mark.parametrize("field,value", [
        ("log_level", "chatty"), ("log_format", "xml"), ("embedding_provider", "word2vec"),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_asyncpg_dsn(self):
        s = Settings(_env_file=None, database_url="postgresql+asyncpg://u:p@db:5432/switches")
        assert s.asyncpg_dsn == "postgresql://u:p@db:5432/switches"

    def test_resolution_thresholds(self):
        s = Settings(_env_file=None, fuzzy_threshold=0.85)
        assert s.resolution_thresholds == {
            "exact": s.exact_threshold,
            "fuzzy": 0.85,
            "embedding": s.embedding_threshold,
            "ai_disambiguation": s.ai_disambiguation_min_confidence,
        }


class TestConfigureLogging:

    def test_json_lines_for_module_loggers(self, tmp_path, restore_logging):
        log_file = tmp_path / "engine.log"
        configure_logging(Settings(_env_file=None, log_format="json", log_file=str(log_file)))

        logging.getLogger("switch_resolution").info("Catalog lookup: found %d/%d", 2, 3)
        logging.getLogger("match_pipeline").debug("not emitted at INFO")
        _flush()

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["event"] == "Catalog lookup: found 2/3"
        assert entry["level"] == "info"
        assert entry["logger"] == "switch_resolution"
        assert "timestamp" in entry

    def test_json_includes_exceptions(self, tmp_path, restore_logging):
        log_file = tmp_path / "engine.log"
        configure_logging(Settings(_env_file=None, log_format="json", log_file=str(log_file)))

        try:
            raise RuntimeError("pool exhausted")
        except RuntimeError:
            logging.getLogger("catalog_repository").exception("Query failed")
        _flush()

        entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
        assert entry["level"] == "error"
        assert "pool exhausted" in entry["exception"]

    def test_text_format_and_level(self, tmp_path, restore_logging):
        log_file = tmp_path / "engine.log"
        configure_logging(Settings(_env_file=None, log_format="text", log_level="WARNING",
                                   log_file=str(log_file)))

        logging.getLogger("embeddings").info("hidden")
        logging.getLogger("embeddings").warning("Embedding service unreachable")
        _flush()

        text = log_file.read_text(encoding="utf-8")
        assert "hidden" not in text
        assert "Embedding service unreachable" in text
        assert "embeddings" in text
        assert logging.getLogger().level == logging.WARNING
