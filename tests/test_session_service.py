"""
Unit tests for functions.session_service
========================================

Covers the session lifecycle (create → store steps → context → final
result → cleanup), TTL expiry, the fixed step-name set, duplicate-step
rejection and the derived known facts.

Run:
    python -m pytest tests/test_session_service.py -v
"""

import sys
import threading
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from pydantic import ValidationError

from functions.session_service import (
    build_known_facts,
    detect_profession,
    determine_experience_level,
    flatten_technical_skills,
)
from functions.utils.errors import InvalidStepName, SessionExpiredOrNotFound, StepAlreadyRecorded
from schemas.session_schema import StepName, StepResult
from utils_test_support import make_service


class TestSessionLifecycle(unittest.TestCase):
    def setUp(self):
        self.service, self.clock = make_service(ttl_seconds=3600)
        self.session_id = self.service.create_session("user-1", "John Smith, Senior Engineer...")

    def test_new_session_has_no_steps(self):
        ctx = self.service.get_session_context(self.session_id)
        self.assertEqual(ctx.step_count, 0)
        self.assertEqual(ctx.previous_steps, {})
        self.assertIsNone(ctx.current_step)
        self.assertIsNone(ctx.known_facts.name)
        self.assertIsNone(ctx.known_facts.experience_level)
        self.assertEqual(ctx.known_facts.skills, [])

    def test_session_ids_are_unique(self):
        other = self.service.create_session("user-1", "Another CV text")
        self.assertNotEqual(other, self.session_id)

    def test_empty_raw_text_rejected(self):
        with self.assertRaises(ValueError):
            self.service.create_session("user-1", "   ")

    def test_metadata_is_exposed_in_context(self):
        sid = self.service.create_session("user-1", "CV text", {"file_name": "cv.pdf"})
        ctx = self.service.get_session_context(sid)
        self.assertEqual(ctx.processing_metadata, {"file_name": "cv.pdf"})

    def test_context_read_is_idempotent(self):
        self.service.store_step_result(
            self.session_id, "basic_info", {"name": "John Smith", "currentTitle": "Senior Engineer"}, 0.9
        )
        first = self.service.get_session_context(self.session_id)
        second = self.service.get_session_context(self.session_id)
        self.assertEqual(first.model_dump(), second.model_dump())

    def test_step_count_tracks_distinct_steps(self):
        for expected, step in enumerate(StepName.values(), start=1):
            self.service.store_step_result(self.session_id, step, {"k": "v"})
            ctx = self.service.get_session_context(self.session_id)
            self.assertEqual(ctx.step_count, expected)
            self.assertEqual(ctx.current_step, step)
        self.assertEqual(list(ctx.previous_steps), StepName.values())

    def test_invalid_step_name_rejected(self):
        with self.assertRaises(InvalidStepName) as cm:
            self.service.store_step_result(self.session_id, "education", {})
        self.assertIn("basic_info", cm.exception.allowed)
        self.assertEqual(self.service.get_session_context(self.session_id).step_count, 0)

    def test_duplicate_step_rejected_and_original_kept(self):
        self.service.store_step_result(self.session_id, "basic_info", {"name": "John Smith"}, 0.95)
        with self.assertRaises(StepAlreadyRecorded):
            self.service.store_step_result(self.session_id, "basic_info", {"name": "Someone Else"}, 0.5)
        ctx = self.service.get_session_context(self.session_id)
        self.assertEqual(ctx.step_count, 1)
        self.assertEqual(ctx.previous_steps["basic_info"].data["name"], "John Smith")

    def test_confidence_out_of_range_rejected(self):
        with self.assertRaises(ValidationError):
            self.service.store_step_result(self.session_id, "basic_info", {"name": "X"}, 1.5)
        self.assertEqual(self.service.get_session_context(self.session_id).step_count, 0)

    def test_stats_report_elapsed_time(self):
        self.service.store_step_result(self.session_id, "basic_info", {"name": "John"})
        self.clock.advance(42)
        stats = self.service.get_session_stats(self.session_id)
        self.assertEqual(stats.step_count, 1)
        self.assertEqual(stats.current_step, "basic_info")
        self.assertAlmostEqual(stats.processing_time_seconds, 42.0)
        self.assertTrue(stats.is_active)

    def test_concurrent_writers_for_same_step(self):
        """Exactly one writer wins; the others get StepAlreadyRecorded."""
        outcomes = []
        barrier = threading.Barrier(8)

        def writer(i):
            barrier.wait()
            try:
                self.service.store_step_result(self.session_id, "professional", {"writer": i})
                outcomes.append("ok")
            except StepAlreadyRecorded:
                outcomes.append("dup")

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("dup"), 7)
        self.assertEqual(self.service.get_session_context(self.session_id).step_count, 1)


class TestDeadSessions(unittest.TestCase):
    def setUp(self):
        self.service, self.clock = make_service(ttl_seconds=60)
        self.session_id = self.service.create_session("user-1", "CV text")

    def _assert_dead(self, session_id):
        with self.assertRaises(SessionExpiredOrNotFound):
            self.service.get_session_context(session_id)
        with self.assertRaises(SessionExpiredOrNotFound):
            self.service.store_step_result(session_id, "basic_info", {"name": "X"})
        with self.assertRaises(SessionExpiredOrNotFound):
            self.service.get_final_result(session_id)
        with self.assertRaises(SessionExpiredOrNotFound):
            self.service.get_session_stats(session_id)

    def test_unknown_session_fails_closed(self):
        self._assert_dead("does-not-exist")

    def test_cleaned_up_session_fails_closed(self):
        self.assertTrue(self.service.cleanup_session(self.session_id))
        self._assert_dead(self.session_id)

    def test_cleanup_is_idempotent(self):
        self.service.cleanup_session(self.session_id)
        self.assertFalse(self.service.cleanup_session(self.session_id))
        self.assertFalse(self.service.cleanup_session("never-existed"))

    def test_expired_session_fails_closed(self):
        self.clock.advance(61)
        self._assert_dead(self.session_id)

    def test_session_alive_just_before_expiry(self):
        self.clock.advance(59)
        self.assertEqual(self.service.get_session_context(self.session_id).step_count, 0)

    def test_cleanup_expired_sessions_sweeps_only_expired(self):
        self.clock.advance(30)
        fresh = self.service.create_session("user-2", "Fresh CV")
        self.clock.advance(31)
        removed = self.service.cleanup_expired_sessions()
        self.assertEqual(removed, 1)
        self._assert_dead(self.session_id)
        self.assertEqual(self.service.get_session_context(fresh).step_count, 0)

    def test_unknown_ids_do_not_accumulate_locks(self):
        locks = self.service.store._session_locks._locks
        before = len(locks)
        for i in range(200):
            with self.assertRaises(SessionExpiredOrNotFound):
                self.service.store_step_result(f"bogus-{i}", "basic_info", {"name": "X"})
        self.assertEqual(len(locks), before)

    def test_expired_session_lock_released(self):
        self.service.store.lock_for(self.session_id)
        self.clock.advance(61)
        with self.assertRaises(SessionExpiredOrNotFound):
            self.service.store_step_result(self.session_id, "basic_info", {"name": "X"})
        self.assertNotIn(self.session_id, self.service.store._session_locks._locks)


class TestFinalResult(unittest.TestCase):
    def setUp(self):
        self.service, self.clock = make_service()

    def test_john_smith_scenario(self):
        sid = self.service.create_session("user-1", "John Smith, Senior Engineer...")
        self.service.store_step_result(sid, "basic_info", {"name": "John Smith", "email": "john@x.com"}, 0.95)
        self.service.store_step_result(
            sid,
            "professional",
            {"experience": [{"title": "Senior Engineer", "years": 4}], "skills": {"technical": ["JS"]}},
            0.88,
        )

        record = self.service.get_final_result(sid)
        public = record.to_public_dict()

        self.assertEqual(public["personalInfo"]["name"], "John Smith")
        self.assertEqual(public["experience"][0]["years"], 4)
        self.assertEqual(public["processingInfo"]["stepsCompleted"], 2)
        self.assertEqual(public["processingInfo"]["confidenceScores"]["basic_info"], 0.95)
        self.assertEqual(public["processingInfo"]["confidenceScores"]["professional"], 0.88)
        self.assertEqual(public["processingInfo"]["experienceLevel"], "mid_level")
        self.assertEqual(public["skills"]["technical"], ["JS"])

    def test_missing_steps_yield_empty_sections(self):
        sid = self.service.create_session("user-1", "CV text")
        self.service.store_step_result(sid, "basic_info", {"name": "Ann Lee"}, 0.7)

        public = self.service.get_final_result(sid).to_public_dict()

        self.assertEqual(public["experience"], [])
        self.assertEqual(public["education"], [])
        self.assertEqual(public["projects"], [])
        self.assertEqual(public["certifications"], [])
        self.assertEqual(public["skills"], {"technical": [], "soft": [], "languages": []})
        self.assertEqual(public["processingInfo"]["stepsCompleted"], 1)
        self.assertIsNone(public["processingInfo"]["experienceLevel"])
        self.assertEqual(public["processingInfo"]["profession"], "general")

    def test_fixed_top_level_shape(self):
        sid = self.service.create_session("user-1", "CV text")
        public = self.service.get_final_result(sid).to_public_dict()
        for key in ("personalInfo", "experience", "skills", "education", "projects", "certifications", "processingInfo"):
            self.assertIn(key, public)
        self.assertEqual(public["processingInfo"]["stepsCompleted"], 0)
        self.assertEqual(public["processingInfo"]["confidenceScores"], {})

    def test_confidence_passthrough_is_exact(self):
        sid = self.service.create_session("user-1", "CV text")
        self.service.store_step_result(sid, "additional", {"projects": []}, 0.3333)
        record = self.service.get_final_result(sid)
        self.assertEqual(record.processing_info.confidence_scores, {"additional": 0.3333})

    def test_malformed_entries_are_dropped(self):
        sid = self.service.create_session("user-1", "CV text")
        self.service.store_step_result(
            sid,
            "professional",
            {"experience": ["not a dict", {"title": "Chef", "company": "Noma"}], "skills": ["Knife work"]},
        )
        record = self.service.get_final_result(sid)
        self.assertEqual(len(record.experience), 1)
        self.assertEqual(record.experience[0].title, "Chef")
        self.assertEqual(record.skills.technical, ["Knife work"])

    def test_final_result_is_repeatable(self):
        sid = self.service.create_session("user-1", "CV text")
        self.service.store_step_result(sid, "basic_info", {"name": "Ann Lee"})
        self.assertEqual(self.service.get_final_result(sid), self.service.get_final_result(sid))

    def test_list_and_object_values_in_text_fields(self):
        sid = self.service.create_session("user-1", "CV text")
        self.service.store_step_result(
            sid, "basic_info", {"name": "Ann Lee", "location": {"city": "Berlin", "country": "DE"}}
        )
        self.service.store_step_result(
            sid,
            "professional",
            {
                "experience": [{"title": "Chef", "description": ["Ran kitchen", "Hired staff"]}],
                "education": [{"degree": "BA", "honors": ["Cum laude", "Dean's list"]}],
            },
        )
        self.service.store_step_result(
            sid, "additional", {"awards": [{"name": "Best Chef", "issuer": {"name": "Guide", "country": "FR"}}]}
        )

        record = self.service.get_final_result(sid)

        self.assertEqual(record.personal_info.location, "Berlin, DE")
        self.assertEqual(record.experience[0].description, "Ran kitchen; Hired staff")
        self.assertEqual(record.education[0].honors, "Cum laude; Dean's list")
        self.assertEqual(record.awards[0].issuer, "Guide, FR")

    def test_empty_structured_value_becomes_none(self):
        sid = self.service.create_session("user-1", "CV text")
        self.service.store_step_result(sid, "basic_info", {"name": "Ann Lee", "location": {}, "summary": []})
        info = self.service.get_final_result(sid).personal_info
        self.assertIsNone(info.location)
        self.assertIsNone(info.summary)

    def test_grouped_skills_agree_with_known_facts(self):
        sid = self.service.create_session("user-1", "CV text")
        self.service.store_step_result(
            sid,
            "professional",
            {"skills": {"technical": [{"category": "Lang", "items": ["Python", "Go"]}, "SQL"]}},
        )
        facts = self.service.get_session_context(sid).known_facts
        record = self.service.get_final_result(sid)
        self.assertEqual(record.skills.technical, ["Python", "Go", "SQL"])
        self.assertEqual(facts.skills, record.skills.technical)
        self.assertEqual(facts.skill_count, 3)


class TestKnownFacts(unittest.TestCase):
    def test_detect_profession(self):
        cases = {
            "Senior Software Engineer": "software_developer",
            "Registered Nurse": "healthcare",
            "High School Teacher": "education",
            "Head Chef": "culinary",
            "Account Manager": "sales_business",
            "Carpenter": "general",
            None: "general",
        }
        for title, expected in cases.items():
            with self.subTest(title=title):
                self.assertEqual(detect_profession(title), expected)

    def test_experience_level_buckets(self):
        def level(*years):
            return determine_experience_level([{"years": y} for y in years])

        self.assertEqual(level(1), "entry_level")
        self.assertEqual(level(1, 1), "mid_level")
        self.assertEqual(level(4.5), "mid_level")
        self.assertEqual(level(5), "senior_level")
        self.assertEqual(level(6, 3.9), "senior_level")
        self.assertEqual(level(10), "executive_level")
        self.assertEqual(determine_experience_level([]), "entry_level")

    def test_experience_without_years_uses_date_span(self):
        entries = [{"startDate": "Jan 2015", "endDate": "Mar 2021"}]
        self.assertEqual(determine_experience_level(entries, current_year=2025), "senior_level")

    def test_ongoing_role_counts_until_current_year(self):
        entries = [{"startDate": "2012", "endDate": "Present"}]
        self.assertEqual(determine_experience_level(entries, current_year=2025), "executive_level")

    def test_entry_without_any_dates_counts_one_year(self):
        entries = [{"title": "Intern"}, {"title": "Assistant"}]
        self.assertEqual(determine_experience_level(entries), "mid_level")

    def test_flatten_technical_skills(self):
        self.assertEqual(flatten_technical_skills({"technical": ["Python", " ", "SQL"]}), ["Python", "SQL"])
        self.assertEqual(flatten_technical_skills(["Excel"]), ["Excel"])
        self.assertEqual(
            flatten_technical_skills({"technical": [{"category": "Web", "items": ["React", "CSS"]}]}),
            ["React", "CSS"],
        )
        self.assertEqual(flatten_technical_skills(None), [])

    def test_build_known_facts_from_steps(self):
        steps = {
            "basic_info": StepResult(
                step_name=StepName.BASIC_INFO,
                data={"name": "Jane Doe", "email": "jane@x.com", "currentTitle": "Pastry Chef"},
            ),
            "professional": StepResult(
                step_name=StepName.PROFESSIONAL,
                data={"experience": [{"years": 3}], "skills": {"technical": ["Baking", "Plating"]}},
            ),
        }
        facts = build_known_facts(steps)
        self.assertEqual(facts.name, "Jane Doe")
        self.assertEqual(facts.current_title, "Pastry Chef")
        self.assertEqual(facts.profession, "culinary")
        self.assertEqual(facts.experience_level, "mid_level")
        self.assertEqual(facts.skill_count, 2)


if __name__ == "__main__":
    unittest.main()
