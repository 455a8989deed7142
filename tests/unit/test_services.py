"""
Unit tests for services
"""

import json
import subprocess

import pytest
import requests
from unittest.mock import Mock, patch, MagicMock
from botocore.exceptions import ClientError

from dwrepl.exceptions import (
    CaptureRegistrationError,
    ConfigurationError,
    ConnectivityError,
    ReplicationException,
    SnapshotExtractionError,
    StorageError,
)
from dwrepl.models.config import CaptureConfig, SnapshotConfig, SourceConfig, WarehouseConfig
from dwrepl.models.state import ReplicationPhase, RunMode
from dwrepl.services.capture_client import ChangeCaptureClient, build_sink_uri
from dwrepl.services.config_service import ConfigService
from dwrepl.services.database_service import DatabaseService
from dwrepl.services.marker_store import CAPTURE_REGISTERED_MARKER, SNAPSHOT_LOADED_MARKER, MarkerStore
from dwrepl.services.metrics_service import MetricsService
from dwrepl.services.snapshot_extractor import SnapshotExtractor
from dwrepl.services.source_service import SourceService
from dwrepl.services.storage_service import (
    LocalWorkspaceStorage,
    S3WorkspaceStorage,
    StorageCredentials,
    open_workspace,
)


CONFIG_DATA = {
    "table": "tpch.orders",
    "storage": "s3://bucket/replication/orders",
    "source": {"host": "tidb", "port": 4000, "user": "root"},
    "target": {"account_id": "acct", "user": "loader", "password": "pw",
               "database": "DW", "schema": "PUBLIC"},
    "capture": {"host": "ticdc", "flush_interval": 30},
    "snapshot_concurrency": 4,
}


@pytest.fixture
def warehouse_config():
    return WarehouseConfig(account_id="acct", user="loader", password="pw", database="DW", schema="PUBLIC")


class TestConfigService:
    """Test ConfigService"""

    def test_load_json_config(self, tmp_path):
        """Test loading JSON configuration"""
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps(CONFIG_DATA))

        config = ConfigService().load_config(str(config_path))

        assert config.table == "tpch.orders"
        assert config.source.host == "tidb"
        assert config.target.schema == "PUBLIC"
        assert config.capture.flush_interval == 30
        assert config.snapshot.concurrency == 4
        assert config.mode is RunMode.FULL

    def test_load_yaml_config(self, tmp_path):
        """Test loading YAML configuration"""
        config_path = tmp_path / "config.yaml"
        config_path.write_text(
            "table: tpch.orders\n"
            "storage: file:///tmp/ws\n"
            "mode: snapshot-only\n"
            "target:\n"
            "  account_id: acct\n"
            "  user: loader\n"
            "  database: DW\n"
            "  schema: PUBLIC\n"
        )

        config = ConfigService().load_config(str(config_path))

        assert config.mode is RunMode.SNAPSHOT_ONLY
        assert config.storage == "file:///tmp/ws"

    def test_overrides(self, tmp_path):
        """Test command-line overrides replace file values"""
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps(CONFIG_DATA))

        config = ConfigService().load_config(str(config_path), {
            "mode": "incremental-only",
            "sink_uri": "s3://other/sink",
            "timezone": None,
        })

        assert config.mode is RunMode.INCREMENTAL_ONLY
        assert config.sink_uri == "s3://other/sink"
        assert config.timezone == "System"

    def test_invalid_override(self, tmp_path):
        """Test invalid override values are rejected"""
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps(CONFIG_DATA))

        with pytest.raises(ConfigurationError, match="Unknown mode"):
            ConfigService().load_config(str(config_path), {"mode": "sometimes"})

    def test_missing_file(self, tmp_path):
        """Test missing configuration file"""
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigService().load_config(str(tmp_path / "missing.yaml"))

    def test_unsupported_format(self, tmp_path):
        """Test unsupported file suffix"""
        config_path = tmp_path / "config.ini"
        config_path.write_text("[x]")

        with pytest.raises(ConfigurationError, match="Unsupported configuration format"):
            ConfigService().load_config(str(config_path))

    def test_invalid_json(self, tmp_path):
        """Test malformed JSON"""
        config_path = tmp_path / "config.json"
        config_path.write_text("{broken")

        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            ConfigService().load_config(str(config_path))

    def test_non_mapping(self, tmp_path):
        """Test a configuration that is not a mapping"""
        config_path = tmp_path / "config.yaml"
        config_path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="must be a mapping"):
            ConfigService().load_config(str(config_path))


class TestDatabaseService:
    """Test DatabaseService"""

    @patch('dwrepl.services.database_service.pymysql.connect')
    def test_connect_source(self, mock_connect):
        """Test source connections use pymysql with timeouts"""
        service = DatabaseService()

        connection = service.connect(SourceConfig(host="tidb"), "source")

        assert connection is mock_connect.return_value
        kwargs = mock_connect.call_args.kwargs
        assert kwargs["host"] == "tidb"
        assert kwargs["port"] == 4000
        assert kwargs["connect_timeout"] == 10
        assert service.get_connection("source") is connection

    @patch('dwrepl.services.database_service.snowflake.connector.connect')
    def test_connect_warehouse(self, mock_connect, warehouse_config):
        """Test warehouse connections use the Snowflake connector"""
        service = DatabaseService()

        service.connect(warehouse_config, "target")

        kwargs = mock_connect.call_args.kwargs
        assert kwargs["account"] == "acct"
        assert kwargs["database"] == "DW"
        assert kwargs["warehouse"] == "COMPUTE_WH"
        assert "role" not in kwargs

    @patch('dwrepl.utils.retry.time.sleep')
    @patch('dwrepl.services.database_service.pymysql.connect')
    def test_connect_failure_is_retried(self, mock_connect, mock_sleep):
        """Test connection failures are retried then raised as ConnectivityError"""
        mock_connect.side_effect = OSError("connection refused")
        service = DatabaseService()

        with pytest.raises(ConnectivityError, match="connection refused"):
            service.connect(SourceConfig(), "source")

        assert mock_connect.call_count == 3

    def test_get_missing_connection(self):
        """Test unknown connection names"""
        with pytest.raises(ConnectivityError, match="not found"):
            DatabaseService().get_connection("nope")

    @patch('dwrepl.services.database_service.pymysql.connect')
    def test_execute_query_closes_cursor(self, mock_connect):
        """Test queries return rows and always close the cursor"""
        cursor = MagicMock()
        cursor.fetchall.return_value = [(1,)]
        mock_connect.return_value.cursor.return_value = cursor
        service = DatabaseService()
        service.connect(SourceConfig(), "source")

        rows = service.execute_query("SELECT %s", (1,), connection_name="source")

        assert rows == [(1,)]
        cursor.execute.assert_called_once_with("SELECT %s", (1,))
        cursor.close.assert_called_once()

    @patch('dwrepl.services.database_service.pymysql.connect')
    def test_execute_update_returns_rowcount(self, mock_connect):
        """Test statements return the affected row count"""
        cursor = MagicMock()
        cursor.rowcount = 3
        mock_connect.return_value.cursor.return_value = cursor
        service = DatabaseService()
        service.connect(SourceConfig(), "source")

        assert service.execute_update("DELETE FROM t", connection_name="source") == 3

    @patch('dwrepl.services.database_service.snowflake.connector.connect')
    def test_is_connected_warehouse(self, mock_connect, warehouse_config):
        """Test warehouse liveness uses is_closed"""
        mock_connect.return_value.is_closed.return_value = False
        service = DatabaseService()
        service.connect(warehouse_config, "target")

        assert service.is_connected("target") is True
        assert service.is_connected("other") is False

    @patch('dwrepl.services.database_service.pymysql.connect')
    def test_close_all_connections(self, mock_connect):
        """Test every connection is closed and forgotten"""
        service = DatabaseService()
        service.connect(SourceConfig(), "a")
        service.connect(SourceConfig(), "b")

        service.close_all_connections()

        assert mock_connect.return_value.close.call_count == 2
        assert service.is_connected("a") is False

    @patch('dwrepl.services.database_service.pymysql.connect')
    def test_test_connection(self, mock_connect):
        """Test connection check runs SELECT 1 on a throwaway connection"""
        cursor = MagicMock()
        cursor.fetchall.return_value = [(1,)]
        mock_connect.return_value.cursor.return_value = cursor
        service = DatabaseService()

        assert service.test_connection(SourceConfig()) is True
        mock_connect.return_value.close.assert_called_once()


class TestSourceService:
    """Test SourceService"""

    def test_get_current_tso(self):
        """Test the TSO is read from the Position column"""
        database_service = Mock()
        database_service.execute_query.return_value = [("tidb-binlog", 449012345678901249, "", "", "")]

        assert SourceService(database_service).get_current_tso() == 449012345678901249

    def test_get_current_tso_empty(self):
        """Test an empty master status"""
        database_service = Mock()
        database_service.execute_query.return_value = []

        with pytest.raises(ConnectivityError):
            SourceService(database_service).get_current_tso()

    def test_get_table_columns(self):
        """Test information_schema rows become column descriptors"""
        database_service = Mock()
        database_service.execute_query.side_effect = [
            [
                ("id", "bigint", "bigint(20) unsigned", None, 20, 0, None, "NO", None),
                ("name", "varchar", "varchar(64)", 64, None, None, None, "YES", "anon"),
                ("price", "decimal", "decimal(10,2)", None, 10, 2, None, "YES", None),
                ("created", "datetime", "datetime(3)", None, None, None, 3, "NO", None),
            ],
            [("id",)],
        ]

        columns = SourceService(database_service).get_table_columns("tpch", "orders")

        assert [(c.name, c.type, c.precision, c.scale) for c in columns] == [
            ("id", "bigint unsigned", None, None),
            ("name", "varchar", 64, None),
            ("price", "decimal", 10, 2),
            ("created", "datetime", 3, None),
        ]
        assert [c.is_primary_key for c in columns] == [True, False, False, False]
        assert [c.nullable for c in columns] == [False, True, True, False]
        assert columns[1].default == "anon"

    def test_get_table_columns_missing_table(self):
        """Test unknown source tables"""
        database_service = Mock()
        database_service.execute_query.return_value = []

        with pytest.raises(ReplicationException, match="not found"):
            SourceService(database_service).get_table_columns("tpch", "nope")


class TestLocalWorkspaceStorage:
    """Test LocalWorkspaceStorage"""

    def test_write_read_list(self, tmp_path):
        """Test objects are written under the root and listed relative to it"""
        storage = LocalWorkspaceStorage(f"file://{tmp_path}/ws")
        storage.write_text("snapshot/b.csv", "b")
        storage.write_text("snapshot/a.csv", "a")
        storage.write_text("increment/metadata", "{}")

        assert storage.read_text("snapshot/a.csv") == "a"
        assert storage.list("snapshot/") == ["snapshot/a.csv", "snapshot/b.csv"]
        assert storage.exists("increment/metadata")
        assert not storage.exists("increment/other")
        assert storage.credentials is None
        assert storage.url_for("snapshot") == f"file://{tmp_path}/ws/snapshot"

    def test_list_missing_root(self, tmp_path):
        """Test listing a workspace that does not exist yet"""
        assert LocalWorkspaceStorage(f"file://{tmp_path}/none").list() == []

    def test_read_missing(self, tmp_path):
        """Test reading a missing object"""
        with pytest.raises(StorageError):
            LocalWorkspaceStorage(f"file://{tmp_path}").read_text("nope")


class TestS3WorkspaceStorage:
    """Test S3WorkspaceStorage"""

    @pytest.fixture
    def session(self):
        session = Mock()
        frozen = Mock(access_key="AKIA", secret_key="secret", token=None)
        session.get_credentials.return_value.get_frozen_credentials.return_value = frozen
        return session

    def test_bucket_and_prefix(self, session):
        """Test URI parsing"""
        storage = S3WorkspaceStorage("s3://bucket/replication/orders/", session=session)

        assert storage.bucket == "bucket"
        assert storage.prefix == "replication/orders"
        assert storage.url_for("snapshot") == "s3://bucket/replication/orders/snapshot"
        session.client.assert_called_once_with("s3")

    def test_credentials(self, session):
        """Test credentials come from the session provider chain"""
        storage = S3WorkspaceStorage("s3://bucket/ws", session=session)

        assert storage.credentials == StorageCredentials("AKIA", "secret", None)
        assert "secret" not in repr(storage.credentials)

    def test_missing_credentials(self, session):
        """Test missing credentials"""
        session.get_credentials.return_value = None

        with pytest.raises(StorageError, match="No AWS credentials"):
            S3WorkspaceStorage("s3://bucket/ws", session=session).credentials

    def test_exists(self, session):
        """Test head_object probes and 404 handling"""
        storage = S3WorkspaceStorage("s3://bucket/ws", session=session)

        assert storage.exists("snapshot/loadinfo") is True
        session.client.return_value.head_object.assert_called_once_with(Bucket="bucket",
                                                                         Key="ws/snapshot/loadinfo")

        session.client.return_value.head_object.side_effect = ClientError(
            {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        assert storage.exists("snapshot/loadinfo") is False

    def test_exists_access_denied(self, session):
        """Test other probe errors are raised"""
        session.client.return_value.head_object.side_effect = ClientError(
            {"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadObject")

        with pytest.raises(StorageError):
            S3WorkspaceStorage("s3://bucket/ws", session=session).exists("snapshot/loadinfo")

    def test_list(self, session):
        """Test paginated listing returns keys relative to the workspace"""
        paginator = session.client.return_value.get_paginator.return_value
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "ws/snapshot/tpch.orders.0.csv"}]},
            {"Contents": [{"Key": "ws/snapshot/tpch.orders.1.csv"}]},
            {},
        ]
        storage = S3WorkspaceStorage("s3://bucket/ws", session=session)

        assert storage.list("snapshot/") == ["snapshot/tpch.orders.0.csv", "snapshot/tpch.orders.1.csv"]
        paginator.paginate.assert_called_once_with(Bucket="bucket", Prefix="ws/snapshot/")

    def test_write_text(self, session):
        """Test objects are uploaded under the prefix"""
        S3WorkspaceStorage("s3://bucket/ws", session=session).write_text("snapshot/loadinfo", "{}")

        session.client.return_value.put_object.assert_called_once_with(
            Bucket="bucket", Key="ws/snapshot/loadinfo", Body=b"{}")

    def test_open_workspace(self, tmp_path):
        """Test backend selection by scheme"""
        assert isinstance(open_workspace(f"file://{tmp_path}"), LocalWorkspaceStorage)
        with pytest.raises(ConfigurationError, match="Unsupported storage scheme"):
            open_workspace("gs://bucket/ws")


class TestMarkerStore:
    """Test MarkerStore"""

    def test_phase_from_markers(self, tmp_path):
        """Test the phase follows the markers present"""
        storage = LocalWorkspaceStorage(f"file://{tmp_path}")
        markers = MarkerStore(storage)

        assert markers.phase() is ReplicationPhase.NOT_STARTED
        assert markers.read_snapshot_info() is None

        markers.mark_snapshot_loaded({"consistency_point": 7, "rows_loaded": 3})
        assert markers.phase() is ReplicationPhase.SNAPSHOT_LOADED
        assert markers.read_snapshot_info() == {"consistency_point": 7, "rows_loaded": 3}

        storage.write_text(CAPTURE_REGISTERED_MARKER, "{}")
        assert markers.phase() is ReplicationPhase.INCREMENTAL_RUNNING

    def test_capture_marker_takes_precedence(self, tmp_path):
        """Test a capture marker alone still means incremental running"""
        storage = LocalWorkspaceStorage(f"file://{tmp_path}")
        storage.write_text(CAPTURE_REGISTERED_MARKER, "{}")

        assert MarkerStore(storage).phase() is ReplicationPhase.INCREMENTAL_RUNNING
        assert not storage.exists(SNAPSHOT_LOADED_MARKER)


class TestChangeCaptureClient:
    """Test change-capture registration"""

    def test_build_sink_uri_s3(self):
        """Test s3 sink URIs carry flush settings and credentials"""
        uri = build_sink_uri("s3://bucket/ws/increment", CaptureConfig(flush_interval=60, file_size=1024),
                             StorageCredentials("AKIA", "se/cret", "tok"))

        assert uri.startswith("s3://bucket/ws/increment?")
        assert "flush-interval=60s" in uri
        assert "file-size=1024" in uri
        assert "protocol=csv" in uri
        assert "access-key=AKIA" in uri
        assert "secret-access-key=se%2Fcret" in uri
        assert "session-token=tok" in uri

    def test_build_sink_uri_file(self):
        """Test local sinks carry no credentials"""
        uri = build_sink_uri("file:///tmp/ws/increment", CaptureConfig(flush_interval=2.5))

        assert uri.startswith("file:///tmp/ws/increment?")
        assert "flush-interval=2.5s" in uri
        assert "access-key" not in uri

    def test_build_sink_uri_unsupported(self):
        """Test unsupported sink schemes"""
        with pytest.raises(ConfigurationError):
            build_sink_uri("gs://bucket/ws", CaptureConfig())

    def test_changefeed_config(self):
        """Test the changefeed request body"""
        client = ChangeCaptureClient(CaptureConfig())

        config = client.build_changefeed_config("s3://b/p", "tpch.orders", 42)

        assert config["sink_uri"] == "s3://b/p"
        assert config["start_ts"] == 42
        assert config["replica_config"]["filter"]["rules"] == ["tpch.orders"]
        assert config["replica_config"]["sink"]["csv"]["include_commit_ts"] is True
        assert config["replica_config"]["sink"]["cloud_storage_config"]["output_column_id"] is True
        assert "start_ts" not in client.build_changefeed_config("s3://b/p", "tpch.orders")

    @patch('dwrepl.services.capture_client.requests.post')
    def test_create_changefeed(self, mock_post):
        """Test a successful registration returns the changefeed id"""
        mock_post.return_value = Mock(status_code=200)
        mock_post.return_value.json.return_value = {"id": "cf-1", "config": {}}
        client = ChangeCaptureClient(CaptureConfig(host="ticdc", port=8300))

        assert client.create_changefeed("s3://b/p", "tpch.orders", 42) == "cf-1"
        args, kwargs = mock_post.call_args
        assert args[0] == "http://ticdc:8300/api/v2/changefeeds"
        assert kwargs["json"]["start_ts"] == 42

    @patch('dwrepl.services.capture_client.requests.post')
    def test_create_changefeed_rejected(self, mock_post):
        """Test a non-200 response fails registration"""
        mock_post.return_value = Mock(status_code=400, text="changefeed already exists")
        client = ChangeCaptureClient(CaptureConfig())

        with pytest.raises(CaptureRegistrationError, match="status code: 400"):
            client.create_changefeed("s3://b/p", "tpch.orders")

    @patch('dwrepl.utils.retry.time.sleep')
    @patch('dwrepl.services.capture_client.requests.post')
    def test_create_changefeed_unreachable(self, mock_post, mock_sleep):
        """Test an unreachable server is retried then raised"""
        mock_post.side_effect = requests.ConnectionError("refused")
        client = ChangeCaptureClient(CaptureConfig())

        with pytest.raises(ConnectivityError):
            client.create_changefeed("s3://b/p", "tpch.orders")
        assert mock_post.call_count == 3


class TestSnapshotExtractor:
    """Test SnapshotExtractor"""

    def test_build_command(self):
        """Test dumpling arguments"""
        extractor = SnapshotExtractor(SourceConfig(host="tidb", password="pw", ssl_ca="/ca.pem"),
                                      SnapshotConfig(dumpling_path="/bin/dumpling", concurrency=4))

        command = extractor.build_command("tpch.orders", "s3://bucket/ws/snapshot", 42)

        assert command[0] == "/bin/dumpling"
        assert command[command.index("--snapshot") + 1] == "42"
        assert command[command.index("--tables-list") + 1] == "tpch.orders"
        assert command[command.index("--output") + 1] == "s3://bucket/ws/snapshot"
        assert command[command.index("--threads") + 1] == "4"
        assert command[command.index("--filetype") + 1] == "csv"
        assert "--no-header" in command
        assert command[-2:] == ["--ca", "/ca.pem"]

    @patch('dwrepl.services.snapshot_extractor.subprocess.run')
    def test_extract_passes_credentials(self, mock_run):
        """Test storage credentials reach dumpling through the environment"""
        extractor = SnapshotExtractor(SourceConfig(), SnapshotConfig())

        extractor.extract("tpch.orders", "s3://bucket/ws/snapshot", 42, StorageCredentials("AKIA", "secret", "tok"))

        env = mock_run.call_args.kwargs["env"]
        assert env["AWS_ACCESS_KEY_ID"] == "AKIA"
        assert env["AWS_SECRET_ACCESS_KEY"] == "secret"
        assert env["AWS_SESSION_TOKEN"] == "tok"
        assert mock_run.call_args.kwargs["check"] is True

    @patch('dwrepl.services.snapshot_extractor.subprocess.run')
    def test_extract_failure(self, mock_run):
        """Test a failing dump surfaces its stderr"""
        mock_run.side_effect = subprocess.CalledProcessError(1, ["dumpling"], stderr="snapshot too old")
        extractor = SnapshotExtractor(SourceConfig(), SnapshotConfig())

        with pytest.raises(SnapshotExtractionError, match="snapshot too old"):
            extractor.extract("tpch.orders", "s3://bucket/ws/snapshot", 42)

    @patch('dwrepl.services.snapshot_extractor.subprocess.run')
    def test_extract_missing_binary(self, mock_run):
        """Test a missing dumpling executable"""
        mock_run.side_effect = FileNotFoundError()
        extractor = SnapshotExtractor(SourceConfig(), SnapshotConfig())

        with pytest.raises(SnapshotExtractionError, match="not found"):
            extractor.extract("tpch.orders", "s3://bucket/ws/snapshot", 42)


class TestMetricsService:
    """Test MetricsService"""

    def test_metrics_exposition(self):
        """Test recorded values appear in the exposition output"""
        metrics = MetricsService()
        metrics.set_snapshot_rows("orders", 500)
        metrics.record_snapshot_part_loaded("orders")
        metrics.record_change_file_merged("orders", 0.3)
        metrics.record_ddl_applied("orders", 2)
        metrics.set_phase("orders", ReplicationPhase.INCREMENTAL_RUNNING)
        metrics.record_error("MergeError", "orchestrator")

        output = metrics.get_metrics()

        assert 'dwrepl_snapshot_rows_loaded{table_name="orders"} 500.0' in output
        assert 'dwrepl_snapshot_parts_loaded_total{table_name="orders"} 1.0' in output
        assert 'dwrepl_change_files_merged_total{table_name="orders"} 1.0' in output
        assert 'dwrepl_ddl_statements_applied_total{table_name="orders"} 2.0' in output
        assert 'dwrepl_replication_phase{table_name="orders"} 2.0' in output
        assert 'dwrepl_errors_total{error_type="MergeError",component="orchestrator"} 1.0' in output

    def test_registries_are_independent(self):
        """Test each service owns its registry"""
        first = MetricsService()
        second = MetricsService()
        first.record_snapshot_part_loaded("orders")

        assert "dwrepl_snapshot_parts_loaded_total{" not in second.get_metrics()

    @patch('dwrepl.services.metrics_service.start_http_server')
    def test_start_server(self, mock_start):
        """Test the HTTP endpoint is started with the service registry"""
        metrics = MetricsService()

        metrics.start_server(9100)

        mock_start.assert_called_once_with(9100, addr='0.0.0.0', registry=metrics.registry)
