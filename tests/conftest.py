"""
Shared pytest fixtures for the dbmigrator tests.

This module provides:
- Environment isolation (no stray settings from the shell or a .env file)
- Configuration fixtures (complete and empty settings)
- A scripted process runner answering like docker, pgloader and pg_dump
- Session, broadcaster and orchestrator fixtures
- Sample MySQL dumps
"""

from pathlib import Path
from typing import List

import pytest
import pytest_asyncio

from dbmigrator.config import (
    CONTAINER_ENV_SETTINGS,
    CONTAINER_FALLBACK_NAMES,
    REQUIRED_SETTINGS,
    Config,
    DockerConfig,
    EventsConfig,
    ReadinessConfig,
    SourceDatabaseConfig,
    StorageConfig,
    TargetDatabaseConfig,
)
from dbmigrator.core.events import LogBroadcaster, SessionLogger
from dbmigrator.core.orchestrator import MigrationOrchestrator
from dbmigrator.core.session import MigrationSession, SessionStore
from tests.fakes import FakeRunner

SOURCE_PASSWORD = "s3cr%t:p@ss/w?rd#'[1]"

MYSQLDUMP = """-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)
--
-- Host: localhost    Database: sales
-- ------------------------------------------------------
/*!40101 SET @OLD_CHARACTER_SET_CLIENT=@@CHARACTER_SET_CLIENT */;

--
-- Current Database: `sales`
--

CREATE DATABASE /*!32312 IF NOT EXISTS*/ `sales` /*!40100 DEFAULT CHARACTER SET utf8mb4 */;

USE `sales`;

CREATE TABLE `customers` (
  `id` int NOT NULL AUTO_INCREMENT,
  `name` varchar(255) DEFAULT NULL,
  PRIMARY KEY (`id`)
) ENGINE=InnoDB;

INSERT INTO `customers` VALUES (1,'Ada'),(2,'Grace');
"""

BARE_DUMP = """-- MySQL dump 10.13
CREATE TABLE `customers` (
  `id` int NOT NULL
) ENGINE=InnoDB;
INSERT INTO `customers` VALUES (1);
"""

PGLOADER_OUTPUT = """2024-01-01T00:00:00.000000Z LOG pgloader version "3.6.9"
             table name     errors       rows      bytes      total time
-----------------------  ---------  ---------  ---------  --------------
        fetch meta data          0          2                     0.041s
         Create Schemas          0          0                     0.002s
-----------------------  ---------  ---------  ---------  --------------
        sales.customers          0          2     0.1 kB          0.019s
-----------------------  ---------  ---------  ---------  --------------
        Total import time          ✓          2     0.1 kB          0.057s
"""

PSQL_TABLES = """           List of relations
 Schema |   Name    | Type  |  Owner
--------+-----------+-------+----------
 sales  | customers | table | postgres
(1 row)
"""

PG_DUMP_OUTPUT = """--
-- PostgreSQL database dump
--
CREATE TABLE sales.customers (id bigint NOT NULL, name text);
"""

ENV_NAMES: List[str] = (
    [env_name for _, _, env_name in REQUIRED_SETTINGS]
    + [env_name for _, _, env_name in CONTAINER_ENV_SETTINGS]
    + CONTAINER_FALLBACK_NAMES
    + ["FALLBACK_DATABASE_NAME"]
)


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep shell variables and any local .env file out of Config."""
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def compose_path(tmp_path: Path) -> Path:
    path = tmp_path / "containers"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path, compose_path: Path) -> Config:
    """Complete configuration with fast readiness polling."""
    return Config(
        source=SourceDatabaseConfig(
            host="mysql-source", user="root", password=SOURCE_PASSWORD, port=3306
        ),
        target=TargetDatabaseConfig(
            host="postgres-target",
            user="postgres",
            password="postgres",
            database="migrated",
            port=5432,
        ),
        docker=DockerConfig(compose_path=compose_path, compose_command=["docker", "compose"]),
        readiness=ReadinessConfig(max_attempts=3, interval=0, grace_period=0),
        storage=StorageConfig(logs_dir=tmp_path / "logs"),
        events=EventsConfig(delivery_timeout=0.05),
    )


@pytest.fixture
def empty_config(tmp_path: Path, compose_path: Path) -> Config:
    """Configuration with none of the required settings."""
    return Config(
        docker=DockerConfig(compose_path=compose_path, compose_command=["docker", "compose"]),
        readiness=ReadinessConfig(max_attempts=1, interval=0, grace_period=0),
        storage=StorageConfig(logs_dir=tmp_path / "logs"),
    )


# ============================================================================
# External commands
# ============================================================================


@pytest.fixture
def runner() -> FakeRunner:
    """Runner answering like a healthy docker, pgloader and pg_dump setup."""
    fake = FakeRunner()
    fake.script("inspect --format", stdout="healthy\n")
    fake.script("ls -la", stdout="total 8\n-rw-r--r-- 1 root root 512 dump.sql\n")
    fake.script(
        "SHOW TABLES",
        stdout="Database\ninformation_schema\nsales\nTables_in_sales\ncustomers\n",
    )
    fake.script("pgloader /migration", stdout=PGLOADER_OUTPUT)
    fake.script("psql", stdout=PSQL_TABLES)
    fake.script("pg_dump", stdout=PG_DUMP_OUTPUT)
    return fake


# ============================================================================
# Sessions
# ============================================================================


@pytest.fixture
def store(config: Config) -> SessionStore:
    return SessionStore(config.storage.logs_dir)


@pytest.fixture
def broadcaster(store: SessionStore) -> LogBroadcaster:
    return LogBroadcaster(store)


@pytest.fixture
def dump_file(tmp_path: Path) -> Path:
    path = tmp_path / "sales.sql"
    path.write_text(MYSQLDUMP, encoding="utf-8")
    return path


@pytest.fixture
def bare_dump(tmp_path: Path) -> Path:
    path = tmp_path / "bare.sql"
    path.write_text(BARE_DUMP, encoding="utf-8")
    return path


@pytest_asyncio.fixture
async def session(store: SessionStore, dump_file: Path) -> MigrationSession:
    return await store.create(dump_file)


@pytest.fixture
def session_log(broadcaster: LogBroadcaster, session: MigrationSession) -> SessionLogger:
    return SessionLogger(broadcaster, session.id)


@pytest.fixture
def orchestrator(config: Config, runner: FakeRunner) -> MigrationOrchestrator:
    return MigrationOrchestrator(config, runner=runner)

