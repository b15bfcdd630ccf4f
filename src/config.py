"""Configuration for ci-signal-sync."""

import json
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

_DEFAULT_MATVIEWS = [
    "prow_test_report_7d_matview",
    "prow_test_report_2d_matview",
    "prow_job_runs_report_matview",
    "prow_job_failed_tests_by_day_matview",
    "prow_test_analysis_by_job_14d_matview",
    "payload_test_failures_14d_matview",
]


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./sigsync.db"
    api_prefix: str = "/api/v1"
    debug: bool = False

    # Analytics warehouse (BigQuery REST)
    bigquery_project: str = ""
    bigquery_token: str = ""
    bigquery_location: str = "US"
    jira_tickets_table: str = "openshift-ci-data-analysis.jira_data.tickets_dedup"
    component_mapping_table: str = "openshift-gce-devel.ci_analysis_us.component_mapping_latest"
    jobs_table: str = "openshift-gce-devel.ci_analysis_us.jobs"
    bug_lookback_days: int = 14
    # A test literally named "upgrade" matches thousands of tickets
    bug_excluded_test_names: Annotated[list[str], NoDecode] = ["upgrade"]
    warehouse_timeout_seconds: float = 600.0

    # Jira
    jira_browse_url: str = "https://issues.redhat.com/browse"

    # Materialized views
    matviews: Annotated[list[str], NoDecode] = list(_DEFAULT_MATVIEWS)
    matview_workers: int = 3
    prometheus_pushgateway: str = ""

    # Artifact blob store (GCS JSON API)
    gcs_bucket: str = "test-platform-results"
    gcs_bucket_root: str = "test-platform-results"
    gcs_token: str = ""
    artifact_base_url: str = "https://gcsweb-ci.apps.ci.l2s4.p1.openshiftapps.com/gcs"
    max_job_files_to_scan: int = 12
    artifact_list_timeout_seconds: float = 30.0
    artifact_read_timeout_seconds: float = 60.0
    artifact_scan_concurrency: int = 10

    model_config = {"env_prefix": "SIGSYNC_"}

    @field_validator("matviews", "bug_excluded_test_names", mode="before")
    @classmethod
    def _parse_name_list(cls, value: object) -> object:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


settings = Settings()
