import os

from wpguard.services.config_validator import FAIL, WARN, validate_file, validate_text
from wpguard.services.orchestrator import POLICY_SOURCE


GOOD = """<IfModule mod_rewrite.c>
    RewriteEngine On
    RewriteCond %{HTTP_USER_AGENT} (sqlmap|nikto) [NC,OR]
    RewriteCond %{HTTP_USER_AGENT} ^curl [NC]
    RewriteRule ^ - [F,L]
</IfModule>
"""


def _checks(report, level):
    return [f.check for f in report.findings if f.level == level]


def test_good_file_passes():
    report = validate_text(GOOD)
    assert report.ok
    assert report.failures == []


def test_shipped_policy_passes():
    report = validate_file(POLICY_SOURCE)
    assert report.ok, [f.message for f in report.failures]
    assert report.warnings == []


def test_dangling_or_before_rule_fails():
    text = GOOD.replace("^curl [NC]", "^curl [NC,OR]")
    report = validate_text(text)
    assert not report.ok
    assert "rewrite" in _checks(report, FAIL)


def test_condition_without_rule_fails():
    text = "<IfModule mod_rewrite.c>\nRewriteCond %{HTTP_HOST} ^www\\. [NC]\n</IfModule>\n"
    report = validate_text(text)
    assert "rewrite" in _checks(report, FAIL)

    text = "RewriteCond %{HTTP_HOST} ^www\\. [NC]\n"
    assert not validate_text(text).ok


def test_unbalanced_tags_fail():
    assert not validate_text("<IfModule mod_rewrite.c>\nRewriteEngine On\n").ok
    assert not validate_text("</Files>\n").ok
    report = validate_text("<IfModule x>\n<Files a>\n</IfModule>\n</Files>\n")
    assert "syntax" in _checks(report, FAIL)


def test_malformed_directives_fail():
    assert not validate_text("RewriteRule\n").ok
    assert not validate_text("RewriteCond %{HTTP_HOST}\nRewriteRule ^ - [F]\n").ok


def test_quoted_arguments_are_accepted():
    text = 'RewriteCond %{HTTP_USER_AGENT} "^Mozilla/5.0 \\(compatible" [NC]\nRewriteRule ^ - [F,L]\n'
    assert validate_text(text).ok


def test_include_optional_fails():
    report = validate_text("IncludeOptional /etc/openlitespeed/bot-ips/*.conf\n")
    assert "compatibility" in _checks(report, FAIL)


def test_utm_blocking_fails():
    text = "RewriteCond %{QUERY_STRING} utm_source [NC]\nRewriteRule ^ - [F,L]\n"
    assert "seo" in _checks(validate_text(text), FAIL)


def test_performance_issues_are_warnings_only():
    rules = "".join(f"RewriteRule ^/?file{i}\\.php$ - [F,L]\n" for i in range(60))
    report = validate_text(rules)
    assert report.ok
    assert "performance" in _checks(report, WARN)


def test_hardcoded_paths_warn():
    report = validate_text("include /home/alice/custom.conf\n")
    assert report.ok
    assert "compatibility" in _checks(report, WARN)


def test_missing_file_fails(tmp_path):
    report = validate_file(str(tmp_path / "missing.conf"))
    assert not report.ok
    assert report.failures[0].check == "file"


def test_validate_file_reads_disk(tmp_path):
    path = tmp_path / "rules.conf"
    path.write_text(GOOD, encoding="utf-8")
    assert validate_file(str(path)).ok
    assert os.path.basename(validate_file(str(path)).path) == "rules.conf"
