import pytest

from spider.config import ENV_OVERRIDES, Config, _coerce

CONFIG_YAML = """
fetcher:
  timeout: 12
  proxy: null
  cookie_jar: false
server:
  host: 127.0.0.1
  port: 9000
logging:
  level: DEBUG
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [*ENV_OVERRIDES, 'SPIDER_CONFIG']:
        monkeypatch.delenv(name, raising=False)


class TestConfig:
    def test_reads_yaml(self, config_file):
        config = Config(str(config_file))
        assert config.fetcher['timeout'] == 12
        assert config.server == {'host': '127.0.0.1', 'port': 9000}
        assert config.logging['level'] == 'DEBUG'

    def test_env_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv('SPIDER_TIMEOUT', '2.5')
        monkeypatch.setenv('SPIDER_PROXY', 'http://10.0.0.1:3128')
        monkeypatch.setenv('SPIDER_COOKIE_JAR', 'true')
        monkeypatch.setenv('SERVER_PORT', '8099')
        config = Config(str(config_file))
        assert config.fetcher['timeout'] == 2.5
        assert config.fetcher['proxy'] == 'http://10.0.0.1:3128'
        assert config.fetcher['cookie_jar'] is True
        assert config.server['port'] == 8099

    def test_env_creates_missing_section(self, tmp_path, monkeypatch):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        monkeypatch.setenv('SPIDER_SOURCE_IP', '10.1.2.3')
        config = Config(str(path))
        assert config.fetcher == {'source_ip': '10.1.2.3'}
        assert config.server == {}

    def test_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv('SPIDER_CONFIG', str(config_file))
        assert Config().fetcher['timeout'] == 12

    def test_bundled_defaults(self):
        config = Config()
        assert config.fetcher['timeout'] == 30
        assert config.fetcher['follow_redirects'] is True
        assert config.server['port'] == 8088

    def test_section(self, config_file):
        config = Config(str(config_file))
        assert config.section('server')['host'] == '127.0.0.1'
        assert config.section('metrics') == {}

    @pytest.mark.parametrize('raw, expected', [
        ('true', True), ('FALSE', False), ('42', 42), ('0.5', 0.5), ('10.0.0.1', '10.0.0.1'),
    ])
    def test_env_values_are_typed(self, raw, expected):
        assert _coerce(raw) == expected

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("fetcher: [unclosed\n")
        with pytest.raises(ValueError):
            Config(str(path))
