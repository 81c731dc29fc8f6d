from __future__ import annotations

from datetime import timedelta

import pytest

from trendr.config import EngineConfig
from trendr.db import init_db, session_scope
from trendr.detectors import EdgeSignal, PivotSignal
from trendr.graph import record_cooccurrence
from trendr.lifecycle import create_alerts, persist_flows
from trendr.models import Topic
from trendr.scorer import FlowCandidate, score_candidates
from trendr.services import (
    DEFAULT_TOPICS, MOTIVATION_LABELS, TopicConflictError, compute_stats, content_by_topic,
    create_topic, get_topic_by_slug, get_topic_motivation_scores, list_content, list_topics,
    search_topics, set_topic_motivation_scores, set_topic_parent, topic_detail,
)
from trendr.utils import utcnow


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class TestTaxonomy:
    def test_create_topic(self, session):
        topic = create_topic(session, "  Home Barista ", aliases=["espresso nerd"], keywords=["Espresso", " "])
        session.commit()
        assert topic.slug == "home-barista"
        assert get_topic_by_slug(session, "home-barista").id == topic.id
        [summary] = list_topics(session)
        assert summary["aliases"] == ["espresso nerd"]
        assert summary["keywords"] == ["espresso"]

    def test_duplicate_name_or_slug_conflicts(self, session, topics):
        with pytest.raises(TopicConflictError):
            create_topic(session, "Gaming")
        with pytest.raises(TopicConflictError):
            create_topic(session, "Crypto")

    def test_blank_slug_rejected(self, session):
        with pytest.raises(ValueError):
            create_topic(session, "!!!")

    def test_missing_parent_rejected(self, session):
        with pytest.raises(ValueError, match="does not exist"):
            create_topic(session, "Sneakers", parent_topic_id=999)

    def test_parent_cycle_rejected(self, session, topics):
        fashion = session.get(Topic, topics["fashion"])
        sneakers = create_topic(session, "Sneakers", parent_topic_id=fashion.id)
        drops = create_topic(session, "Sneaker Drops", parent_topic_id=sneakers.id)
        session.commit()

        with pytest.raises(ValueError, match="cycle"):
            set_topic_parent(session, fashion, drops.id)
        with pytest.raises(ValueError, match="cycle"):
            set_topic_parent(session, sneakers, sneakers.id)
        set_topic_parent(session, drops, fashion.id)
        session.commit()
        assert drops.parent_topic_id == fashion.id

    def test_list_orders_by_content_count(self, session, topics, post):
        post([topics["gaming"], topics["ai"]])
        post([topics["gaming"]])
        session.commit()
        listed = list_topics(session, limit=3)
        assert [t["slug"] for t in listed] == ["gaming", "ai", "crypto"]
        assert [t["content_count"] for t in listed] == [2, 1, 0]
        assert len(list_topics(session, limit=50, offset=5)) == 2

    def test_search(self, session, topics):
        create_topic(session, "Horology", aliases=["Wristwatch Fans"])
        session.commit()
        assert [t["slug"] for t in search_topics(session, "watch")] == ["horology", "watches"]
        assert [t["slug"] for t in search_topics(session, "GAM")] == ["gaming"]
        assert search_topics(session, "   ") == []

    def test_topic_detail(self, session, topics):
        crypto, watches = topics["crypto"], topics["watches"]
        record_cooccurrence(session, [crypto, watches], utcnow())
        set_topic_motivation_scores(session, crypto, {"wealth_accumulation": 0.9})
        session.commit()
        detail = topic_detail(session, session.get(Topic, crypto))
        assert detail["motivations"] == {"wealth_accumulation": 0.9}
        assert detail["related"] == [{"topic_id": watches, "name": "Watches & Luxury", "depth": 1, "weight": 1}]
        assert detail["active_flows"] == 0


# ---------------------------------------------------------------------------
# Motivation scores
# ---------------------------------------------------------------------------


class TestMotivationScores:
    def test_overwrite_not_accumulate(self, session, topics):
        crypto = topics["crypto"]
        set_topic_motivation_scores(session, crypto, {"wealth_accumulation": 0.5, "status_signaling": 0.4})
        session.commit()
        result = set_topic_motivation_scores(session, crypto, {"wealth_accumulation": 0.8})
        session.commit()
        assert result == {"wealth_accumulation": 0.8}
        assert get_topic_motivation_scores(session, crypto) == {"wealth_accumulation": 0.8}

    def test_scores_clamped_and_ordered(self, session, topics):
        scores = set_topic_motivation_scores(
            session, topics["ai"], {"knowledge_expertise": 1.4, "status_signaling": -0.2, "thrill": 0.5},
        )
        assert list(scores) == ["knowledge_expertise", "thrill", "status_signaling"]
        assert scores["knowledge_expertise"] == 1.0
        assert scores["status_signaling"] == 0.0

    def test_blank_label_rejected(self, session, topics):
        with pytest.raises(ValueError):
            set_topic_motivation_scores(session, topics["ai"], {" ": 0.5})

    def test_standard_labels(self):
        assert len(MOTIVATION_LABELS) == 7
        assert "wealth_accumulation" in MOTIVATION_LABELS


# ---------------------------------------------------------------------------
# Content and stats
# ---------------------------------------------------------------------------


class TestContentAndStats:
    def test_content_listing(self, session, topics, post):
        post([topics["crypto"], topics["watches"]], creator="alice")
        post([topics["gaming"]])
        session.commit()
        listed = list_content(session)
        assert len(listed) == 2
        assert listed[0]["platform_id"] == "t3_2"
        assert listed[1]["creator"] == "alice"
        assert listed[1]["topics"] == {"Cryptocurrency": 1.0, "Watches & Luxury": 1.0}
        assert [c["platform_id"] for c in content_by_topic(session, topics["watches"])] == ["t3_1"]

    def test_stats(self, session, topics, post):
        post([topics["crypto"], topics["watches"]], creator="alice")
        post([topics["crypto"]])
        session.commit()

        now = utcnow()
        config = EngineConfig()
        signals = [
            PivotSignal(1, topics["crypto"], topics["watches"], 1.0, 30, 10),
            EdgeSignal(*sorted((topics["crypto"], topics["watches"])), 1.0, 10, 2, 4.0),
        ]
        scored = score_candidates([FlowCandidate(topics["crypto"], topics["watches"], signals)], config)
        flows = persist_flows(session, scored, now, config)
        persist_flows(session, scored, now - timedelta(days=40), config)
        create_alerts(session, flows, now, config)
        session.commit()

        stats = compute_stats(session)
        assert stats["topics"] == 7
        assert stats["content"] == 2
        assert stats["creators"] == 1
        assert stats["edges"] == 1
        assert stats["active_flows"] == 1
        assert stats["unread_alerts"] == 1
        assert stats["content_last_7_days"] == 2
        assert stats["by_platform"] == {"reddit": 2}
        assert stats["top_topics"][0] == {"name": "Cryptocurrency", "count": 2}


# ---------------------------------------------------------------------------
# Database bootstrap
# ---------------------------------------------------------------------------


class TestInitDb:
    def test_default_topics(self):
        names = [name for name, _ in DEFAULT_TOPICS]
        assert len(names) == 15
        assert len(set(names)) == 15
        assert all(keywords for _, keywords in DEFAULT_TOPICS)

    def test_seeds_taxonomy_once(self, tmp_path):
        db_path = tmp_path / "seed.db"
        init_db(db_path)
        init_db(db_path)
        with session_scope() as session:
            assert get_topic_by_slug(session, "watches-luxury") is not None
            assert len(list_topics(session, limit=100)) == 15
