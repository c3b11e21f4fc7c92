from jira_deployer.utils import actions
from jira_deployer.utils.actions import ActionKind


def test_run_quotes_every_argument():
    action = actions.run("echo", "$(rm -rf /)", "a b")
    assert action.kind == ActionKind.RUN
    assert action.to_command() == "echo '$(rm -rf /)' 'a b'"


def test_sudo_prefix():
    assert actions.run("mount", "/dev/xvdb", "/data", sudo=True).to_command() == "sudo mount /dev/xvdb /data"
    assert actions.make_dirs("/tmp/jpt-results").to_command() == "mkdir -p /tmp/jpt-results"


def test_download_renders_wget():
    action = actions.download("https://example.com/jira home.tar.gz", "./jira.tar.gz")
    assert action.to_command() == "wget -q -O ./jira.tar.gz 'https://example.com/jira home.tar.gz'"
    assert action.timeout == 120


def test_unpack_with_and_without_target():
    assert actions.unpack("jira.tar.gz").to_command() == "tar -xzf jira.tar.gz"
    assert actions.unpack("jira.tar.gz", into="/opt").to_command() == "tar -xzf jira.tar.gz -C /opt"


def test_list_archive_root_pipes_into_head():
    assert actions.list_archive_root("./jira.tar.gz").to_command() == "tar -tf ./jira.tar.gz | head -n 1"


def test_move_contents_keeps_glob_unquoted():
    action = actions.move_contents("/tmp/jira storage/apps", "/home/ubuntu/jirahome/plugins", tolerate_failure=True)
    assert action.to_command() == "mv '/tmp/jira storage/apps'/* /home/ubuntu/jirahome/plugins"
    assert action.tolerate_failure is True


def test_apt_install_is_noninteractive():
    command = actions.apt_install(["nfs-common", "collectd"]).to_command()
    assert command.startswith("sudo apt-get update -qq && ")
    assert command.endswith("apt-get install -qq -y nfs-common collectd")


def test_systemctl_always_uses_sudo():
    assert actions.systemctl("restart", "collectd.service").to_command() == "sudo systemctl restart collectd.service"


def test_background_redirects_output():
    action = actions.background("vmstat", "-t", "2", output="/tmp/jpt-results/vmstat.log")
    assert action.to_command() == "nohup vmstat -t 2 > /tmp/jpt-results/vmstat.log 2>&1 &"
    assert action.option("output") == "/tmp/jpt-results/vmstat.log"
    assert action.option("missing") is None


def test_str_names_kind_and_args():
    assert str(actions.copy("a.jar", "jira/lib")) == "copy(a.jar jira/lib)"
