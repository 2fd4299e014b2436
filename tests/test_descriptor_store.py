"""
Unit Tests — Stage Descriptor Store
===================================
Loading pipelines.yaml, validation errors, lookups and the GitHub Actions
workflow import.
"""
import pytest

from pipeline_runner.core.errors import ConfigError, NotFoundError
from pipeline_runner.store.descriptor_store import DescriptorStore, load_github_workflow


PIPELINES_YAML = """
targets:
  staging:
    kind: local_container
    container_name: web
    ports: {"80/tcp": 8080}
  prod:
    kind: cluster
    manifest: k8s/web.yaml
    deployment: web
pipelines:
  web:
    branches: [main, "release/*"]
    variables: {image: acme/web}
    stages:
      - name: checkout
        command: git checkout {commit}
      - name: install
        command: npm install
        retries: 2
        timeout: 120
      - name: lint
        command: npm run lint
        continue-on-failure: true
      - name: build
        command: npm run build
        working-directory: frontend
      - name: deploy
        action: deploy
        target: staging
  docs:
    stages:
      - name: build
        command: mkdocs build
"""


def _store_from_text(tmp_path, text):
    path = tmp_path / "pipelines.yaml"
    path.write_text(text)
    return DescriptorStore.load(str(path))


# ---------------------------------------------------------------------------
# 1. Loading
# ---------------------------------------------------------------------------
class TestLoad:

    def test_loads_pipelines_and_targets(self, tmp_path):
        store = _store_from_text(tmp_path, PIPELINES_YAML)
        assert store.list_pipelines() == ["docs", "web"]
        assert store.list_targets() == ["prod", "staging"]

    def test_stage_fields(self, tmp_path):
        web = _store_from_text(tmp_path, PIPELINES_YAML).get_pipeline("web")
        assert web.stage_names == ["checkout", "install", "lint", "build", "deploy"]
        install = web.stages[1]
        assert install.retries == 2
        assert install.timeout == 120
        assert web.stages[2].continue_on_failure is True
        assert web.stages[3].workdir == "frontend"
        assert web.stages[4].uses_adapter
        assert web.variables == {"image": "acme/web"}

    def test_manifest_resolved_relative_to_file(self, tmp_path):
        store = _store_from_text(tmp_path, PIPELINES_YAML)
        assert store.get_target("prod").manifest == str(tmp_path / "k8s" / "web.yaml")

    def test_target_kind_selects_variant(self, tmp_path):
        store = _store_from_text(tmp_path, PIPELINES_YAML)
        assert store.get_target("staging").kind == "local_container"
        assert store.get_target("staging").name == "staging"
        assert store.get_target("prod").namespace == "default"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            DescriptorStore.load(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            _store_from_text(tmp_path, "pipelines: [unclosed")


# ---------------------------------------------------------------------------
# 2. Validation
# ---------------------------------------------------------------------------
class TestValidation:

    def test_empty_stage_list_rejected(self):
        with pytest.raises(ConfigError, match="no stages"):
            DescriptorStore.from_dict({"pipelines": {"p": {"stages": []}}})

    def test_duplicate_stage_names_rejected(self):
        data = {"pipelines": {"p": {"stages": [
            {"name": "build", "command": "make"},
            {"name": "build", "command": "make again"},
        ]}}}
        with pytest.raises(ConfigError, match="duplicate stage"):
            DescriptorStore.from_dict(data)

    def test_negative_retries_rejected(self):
        data = {"pipelines": {"p": {"stages": [{"name": "a", "command": "x", "retries": -1}]}}}
        with pytest.raises(ConfigError):
            DescriptorStore.from_dict(data)

    def test_adapter_stage_cannot_be_retried(self):
        data = {
            "targets": {"prod": {"kind": "registry", "repository": "ghcr.io/acme/web"}},
            "pipelines": {"p": {"stages": [{"name": "verify", "action": "healthcheck", "target": "prod", "retries": 2}]}},
        }
        with pytest.raises(ConfigError, match="only command stages can be retried"):
            DescriptorStore.from_dict(data)

    def test_zero_timeout_rejected(self):
        data = {"pipelines": {"p": {"stages": [{"name": "a", "command": "x", "timeout": 0}]}}}
        with pytest.raises(ConfigError):
            DescriptorStore.from_dict(data)

    def test_command_stage_needs_command(self):
        data = {"pipelines": {"p": {"stages": [{"name": "a"}]}}}
        with pytest.raises(ConfigError, match="needs a command"):
            DescriptorStore.from_dict(data)

    def test_adapter_stage_needs_known_target(self):
        data = {"pipelines": {"p": {"stages": [{"name": "ship", "action": "deploy", "target": "ghost"}]}}}
        with pytest.raises(ConfigError, match="unknown target 'ghost'"):
            DescriptorStore.from_dict(data)

    def test_unknown_action_rejected(self):
        data = {"pipelines": {"p": {"stages": [{"name": "a", "command": "x", "action": "teleport"}]}}}
        with pytest.raises(ConfigError, match="Unknown action"):
            DescriptorStore.from_dict(data)

    def test_unknown_target_kind_rejected(self):
        with pytest.raises(ConfigError, match="invalid target"):
            DescriptorStore.from_dict({"targets": {"t": {"kind": "mainframe"}}})

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ConfigError):
            DescriptorStore.from_dict(["not", "a", "mapping"])


# ---------------------------------------------------------------------------
# 3. Queries
# ---------------------------------------------------------------------------
class TestQueries:

    def test_unknown_pipeline(self, tmp_path):
        store = _store_from_text(tmp_path, PIPELINES_YAML)
        with pytest.raises(NotFoundError):
            store.get_pipeline("mobile")

    def test_unknown_target(self, tmp_path):
        store = _store_from_text(tmp_path, PIPELINES_YAML)
        with pytest.raises(NotFoundError):
            store.get_target("qa")

    def test_get_pipeline_returns_copy(self, tmp_path):
        store = _store_from_text(tmp_path, PIPELINES_YAML)
        first = store.get_pipeline("web")
        first.stages[0].command = "rm -rf /"
        assert store.get_pipeline("web").stages[0].command == "git checkout {commit}"

    def test_pipelines_for_ref(self, tmp_path):
        store = _store_from_text(tmp_path, PIPELINES_YAML)
        # docs has no branch filter, so it matches everything
        assert store.pipelines_for_ref("refs/heads/main") == ["docs", "web"]
        assert store.pipelines_for_ref("refs/heads/release/1.2") == ["docs", "web"]
        assert store.pipelines_for_ref("refs/heads/feature/x") == ["docs"]


# ---------------------------------------------------------------------------
# 4. GitHub Actions import
# ---------------------------------------------------------------------------
WORKFLOW_YAML = """
name: CI
on:
  push:
    branches: [main]
jobs:
  build:
    runs-on: ubuntu-latest
    timeout-minutes: 10
    defaults:
      run:
        working-directory: app
    steps:
      - uses: actions/checkout@v4
      - uses: actions/setup-node@v4
      - name: Install
        run: npm install
      - name: Test
        run: npm test
        continue-on-error: true
        timeout-minutes: 2
        env:
          CI: true
      - name: Test
        run: npm run e2e
  notify:
    runs-on: ubuntu-latest
    steps:
      - uses: some/action@v1
"""


class TestGithubWorkflow:

    def test_jobs_become_pipelines(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text(WORKFLOW_YAML)
        pipelines = load_github_workflow(str(path))

        # notify has only uses: steps and is not imported
        assert [p.name for p in pipelines] == ["build"]
        build = pipelines[0]
        assert build.branches == ["main"]
        assert build.stage_names == ["Install", "Test", "Test-2"]

    def test_step_options_mapped(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text(WORKFLOW_YAML)
        install, test, e2e = load_github_workflow(str(path))[0].stages

        assert install.command == "npm install"
        assert install.workdir == "app"
        assert install.timeout == 600
        assert install.shell is True
        assert test.continue_on_failure is True
        assert test.timeout == 120
        assert test.env == {"CI": "True"}
        assert e2e.continue_on_failure is False

    def test_store_from_workflow(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text(WORKFLOW_YAML)
        store = DescriptorStore.from_github_workflow(str(path))
        assert store.list_pipelines() == ["build"]
        assert store.pipelines_for_ref("refs/heads/dev") == []

    def test_missing_workflow(self, tmp_path):
        with pytest.raises(ConfigError):
            load_github_workflow(str(tmp_path / "missing.yml"))
