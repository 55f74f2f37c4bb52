"""Tests for absences and the team directory."""

from datetime import date, datetime, timezone

import pytest

from gitlab_pm.absences import (
    Absence,
    AbsenceCalendar,
    absence_from_dict,
    capacity_with_absences,
    parse_absence_csv,
)
from gitlab_pm.store import KeyValueStore
from gitlab_pm.team import TeamDirectory, TeamMember, roles_compatible


class TestAbsence:
    """Tests for Absence and its capacity impact."""

    def test_overlap_counts_working_days(self):
        absence = Absence(username="ana", start_date=date(2026, 1, 8), end_date=date(2026, 1, 13))
        # Thu, Fri, Mon, Tue inside the sprint
        assert absence.overlap_days(date(2026, 1, 5), date(2026, 1, 16)) == 4

    def test_no_overlap(self):
        absence = Absence(username="ana", start_date=date(2026, 2, 1), end_date=date(2026, 2, 5))
        assert absence.overlap_days(date(2026, 1, 5), date(2026, 1, 16)) == 0

    def test_capacity_with_absences(self):
        absences = [Absence(username="ana", start_date=date(2026, 1, 5), end_date=date(2026, 1, 6))]
        impact = capacity_with_absences(absences, "ana", date(2026, 1, 5), date(2026, 1, 16), 40.0)
        assert impact.base_hours == 80.0
        assert impact.hours_lost == 16.0
        assert impact.adjusted_hours == 64.0
        assert impact.absence_days == 2

    def test_from_dict_rejects_reversed_dates(self):
        with pytest.raises(ValueError, match="before start"):
            absence_from_dict({"username": "ana", "startDate": "2026-01-10", "endDate": "2026-01-05"})

    def test_from_dict_chains_date_parse_error(self):
        with pytest.raises(ValueError, match="YYYY-MM-DD") as excinfo:
            absence_from_dict({"username": "ana", "startDate": "05/01/2026", "endDate": "2026-01-06"})
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_from_dict_rejects_unknown_type(self):
        with pytest.raises(ValueError, match="unknown absence type"):
            absence_from_dict({
                "username": "ana", "startDate": "2026-01-05", "endDate": "2026-01-06", "type": "nap",
            })


class TestAbsenceCsv:
    """Tests for CSV absence import."""

    def test_parses_rows_and_reports_bad_lines(self):
        text = (
            "username,startDate,endDate,reason,type\r\n"
            "ana,2026-01-05,2026-01-09,\"Holiday, family\",vacation\r\n"
            "raj,2026-01-12,2026-01-05,,sick\r\n"
            ",,,,\r\n"
            "lee,not-a-date,2026-01-05,,\r\n"
        )
        absences, errors = parse_absence_csv(text)
        assert len(absences) == 1
        assert absences[0].reason == "Holiday, family"
        assert errors == [
            "Line 3: end date is before start date",
            "Line 5: dates must be YYYY-MM-DD",
        ]

    def test_missing_columns(self):
        absences, errors = parse_absence_csv("username,reason\r\nana,x\r\n")
        assert absences == []
        assert errors == ["Missing required columns: startDate, endDate"]

    def test_empty(self):
        assert parse_absence_csv("") == ([], ["CSV is empty"])


class TestAbsenceCalendar:
    """Tests for AbsenceCalendar."""

    def setup_method(self):
        self.store = KeyValueStore()
        self.calendar = AbsenceCalendar(self.store, project_id="42")

    def test_add_replaces_same_id(self):
        absence = Absence(username="ana", start_date=date(2026, 1, 5), end_date=date(2026, 1, 9))
        self.calendar.add(absence)
        self.calendar.add(Absence(
            username="ana", start_date=date(2026, 1, 5), end_date=date(2026, 1, 9), reason="updated",
        ))
        stored = self.calendar.all()
        assert len(stored) == 1
        assert stored[0].reason == "updated"
        assert "absences_42" in self.store

    def test_remove(self):
        absence = Absence(username="ana", start_date=date(2026, 1, 5), end_date=date(2026, 1, 9))
        self.calendar.add(absence)
        assert self.calendar.remove(absence.id) is True
        assert self.calendar.remove(absence.id) is False

    def test_upcoming(self):
        self.calendar.add(Absence(username="ana", start_date=date(2026, 3, 10), end_date=date(2026, 3, 12)))
        self.calendar.add(Absence(username="raj", start_date=date(2026, 6, 1), end_date=date(2026, 6, 5)))
        now = datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert [a.username for a in self.calendar.upcoming(now)] == ["ana"]

    def test_csv_round_trip(self):
        self.calendar.add(Absence(
            username="ana", start_date=date(2026, 1, 5), end_date=date(2026, 1, 9), reason="Trip, \"long\"",
        ))
        other = AbsenceCalendar(KeyValueStore())
        count, errors = other.import_csv(self.calendar.export_csv())
        assert (count, errors) == (1, [])
        assert other.all() == self.calendar.all()


class TestTeamDirectory:
    """Tests for TeamDirectory and role compatibility."""

    def setup_method(self):
        self.store = KeyValueStore()

    def test_roles_compatible(self):
        assert roles_compatible("Developer", "QA Engineer") is True
        assert roles_compatible("Developer", "Product Owner") is False
        assert roles_compatible("Custom", "Developer") is False
        assert roles_compatible("Custom", "Custom") is True

    def test_pod_members_override_project(self):
        TeamDirectory(self.store, project_id="42").save_members([TeamMember(username="ana")])
        TeamDirectory(self.store, project_id="42", pod_id="web").save_members([TeamMember(username="raj")])
        assert [m.username for m in TeamDirectory(self.store, "42", "web").members()] == ["raj"]
        assert [m.username for m in TeamDirectory(self.store, "42", "api").members()] == ["ana"]

    def test_upsert_and_remove(self):
        team = TeamDirectory(self.store, project_id="42")
        team.upsert_member(TeamMember(username="ana", default_capacity=32))
        team.upsert_member(TeamMember(username="ana", default_capacity=24))
        assert team.weekly_capacities() == {"ana": 24}
        assert team.remove_member("ana") is True
        assert team.remove_member("ana") is False

    def test_skips_malformed_members(self):
        self.store.set("team_config", {"members": [{"name": "No username"}, {"username": "ana"}]})
        assert [m.username for m in TeamDirectory(self.store).members()] == ["ana"]

    def test_overrides_match_sprint_id_as_text(self):
        team = TeamDirectory(self.store, project_id="42")
        team.set_override(7, "Sprint 7", "ana", 12, reason="training")
        overrides = team.overrides("7")
        assert overrides["ana"].available_hours == 12
        assert overrides["ana"].reason == "training"
        assert team.overrides(8) == {}

    def test_negative_override_rejected(self):
        with pytest.raises(ValueError):
            TeamDirectory(self.store).set_override(7, "Sprint 7", "ana", -1)

    def test_clear_override(self):
        team = TeamDirectory(self.store)
        team.set_override(7, "Sprint 7", "ana", 12)
        assert team.clear_override(7, "ana") is True
        assert team.overrides(7) == {}
