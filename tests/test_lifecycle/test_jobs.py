"""Tests for named lifecycle jobs."""

from datetime import datetime, timedelta

from freezegun import freeze_time

from ilm.data.db import get_db
from ilm.lifecycle.jobs import JOBS, failed_runs, last_runs, run_job
from ilm.lifecycle.policies import Policy, PolicyStore


def create_compress_policy(db_path):
    return PolicyStore(db_path).create(
        Policy(
            policy_name="SALES_COMPRESS_30D",
            table_owner="DWH",
            table_name="SALES_FACT",
            policy_type="COMPRESSION",
            action_type="COMPRESS",
            age_days=30,
            compression_type="QUERY HIGH",
        )
    )


class TestRunJob:
    """Tests for run_job."""

    def test_registered_jobs(self):
        """The scheduler-facing job names are stable."""
        assert set(JOBS) == {"refresh", "evaluate", "execute", "consolidate", "cleanup_logs"}

    def test_refresh_job(self, test_db, catalog):
        """The refresh job tracks every partitioned object."""
        run = run_job("refresh", test_db)

        assert run.success
        assert run.summary["objects"] == 1
        assert run.summary["partitions_tracked"] == 3

    def test_run_is_recorded(self, test_db, catalog):
        """Each run is stored with its final status and summary."""
        run = run_job("refresh", test_db)

        row = get_db(test_db).fetchone(
            "SELECT job_name, status, finished_at, summary FROM ilm_job_runs WHERE run_id = ?", (run.run_id,)
        )
        assert row[0:2] == ("refresh", "SUCCESS")
        assert row[2] is not None
        assert '"partitions_tracked": 3' in row[3]

    def test_unknown_job_recorded_as_failed(self, test_db):
        """Unknown names fail without raising."""
        run = run_job("defragment", test_db)

        assert not run.success
        assert "Unknown job" in run.error_message
        assert list(failed_runs(datetime(2000, 1, 1), db_path=test_db)["job_name"]) == ["defragment"]

    def test_configuration_error_recorded(self, test_db, catalog):
        """A broken configuration fails the run."""
        get_db(test_db).execute("DELETE FROM ilm_threshold_profiles WHERE profile_name = 'DEFAULT'")

        run = run_job("evaluate", test_db)

        assert run.status == "FAILED"
        assert "DEFAULT" in run.error_message

    def test_item_errors_recorded_as_partial(self, test_db, catalog):
        """A job whose items partly fail is PARTIAL, not SUCCESS."""
        catalog.register_object("DWH", "EVENTS", partitioned=True)
        create_compress_policy(test_db)
        PolicyStore(test_db).create(
            Policy(
                policy_name="EVENTS_COMPRESS",
                table_owner="DWH",
                table_name="EVENTS",
                policy_type="COMPRESSION",
                action_type="COMPRESS",
                age_days=30,
                compression_type="QUERY HIGH",
            )
        )
        run_job("refresh", test_db)
        get_db(test_db).execute("DELETE FROM ilm_objects WHERE object_name = 'EVENTS'")

        run = run_job("evaluate", test_db)

        assert run.status == "PARTIAL"
        assert not run.success
        assert run.summary["policies_evaluated"] == 1
        assert "EVENTS_COMPRESS" in run.summary["errors"][0]
        assert list(failed_runs(datetime(2000, 1, 1), db_path=test_db)["status"]) == ["PARTIAL"]

    def test_pipeline(self, test_db, catalog):
        """refresh, evaluate and execute together compress eligible partitions."""
        create_compress_policy(test_db)

        run_job("refresh", test_db)
        evaluated = run_job("evaluate", test_db)
        executed = run_job("execute", test_db)

        assert evaluated.summary["policies_evaluated"] == 1
        assert evaluated.summary["total_eligible"] >= 1
        assert executed.success
        assert executed.summary["succeeded"] == evaluated.summary["total_eligible"]

    def test_scheduled_execute_respects_window(self, test_db, catalog):
        """A scheduled execute job only acts inside the execution window."""
        create_compress_policy(test_db)
        run_job("refresh", test_db)
        run_job("evaluate", test_db)

        with freeze_time("2030-01-15 12:00:00"):
            midday = run_job("execute", test_db, scheduled=True)
        with freeze_time("2030-01-15 23:00:00"):
            night = run_job("execute", test_db, scheduled=True)

        assert midday.success
        assert midday.summary["stopped_reason"].startswith("Outside execution window")
        assert midday.summary["succeeded"] == 0
        assert night.summary["stopped_reason"] is None
        assert night.summary["succeeded"] >= 1

    def test_consolidate_and_cleanup_jobs(self, test_db, catalog):
        """Maintenance jobs run on an idle database."""
        consolidated = run_job("consolidate", test_db)
        cleaned = run_job("cleanup_logs", test_db)

        assert consolidated.summary["merged"] == 0
        assert cleaned.summary["records_deleted"] == 0


class TestJobHistory:
    """Tests for job history queries."""

    def test_last_runs(self, test_db, catalog):
        """Only the latest run per job name is returned."""
        run_job("refresh", test_db)
        latest = run_job("refresh", test_db)
        run_job("consolidate", test_db)

        runs = last_runs(test_db)

        assert list(runs["job_name"]) == ["consolidate", "refresh"]
        assert int(runs[runs["job_name"] == "refresh"].iloc[0]["run_id"]) == latest.run_id

    def test_failed_runs_since(self, test_db):
        """failed_runs() only returns runs started after the cutoff."""
        run_job("missing-job", test_db)

        assert failed_runs(datetime.now() + timedelta(minutes=1), db_path=test_db).empty
        assert len(failed_runs(datetime.now() - timedelta(minutes=1), db_path=test_db)) == 1
