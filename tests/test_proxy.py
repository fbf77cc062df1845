import pytest

from waha_provisioner.artifacts import ArtifactWriter, Phase
from waha_provisioner.config import PROXY_APACHE
from waha_provisioner.errors import ArtifactWriteError, ProvisionError, ToolInvocationError
from waha_provisioner.proxy import ProxyConfigurator, ProxyState
from waha_provisioner.renderer import has_proxy_block, site_artifact


@pytest.fixture
def proxy(config, tools, rollback):
    return ProxyConfigurator(config, tools, ArtifactWriter(rollback))


def test_fresh_host_is_unconfigured(proxy, context):
    assert proxy.detect_state(context) is ProxyState.UNCONFIGURED


def test_pre_tls_enables_challenge(proxy, context, config, host):
    proxy.configure_pre_tls(context)

    assert proxy.state(context) is ProxyState.HTTP_CHALLENGE_READY
    assert proxy.detect_state(context) is ProxyState.HTTP_CHALLENGE_READY
    link = config.site_link(context.proxy, context.domain)
    assert link.is_symlink()
    assert host.ran("nginx", "-t")
    assert host.ran("systemctl", "reload", "nginx")
    assert (config.ACME_WEBROOT / ".well-known" / "acme-challenge").is_dir()


def test_issuance_failure_is_terminal(proxy, context, host):
    proxy.configure_pre_tls(context)
    host.fail("certbot", stderr="Challenge failed for domain waha.example.com")

    with pytest.raises(ToolInvocationError):
        proxy.issue_certificate(context)

    assert proxy.state(context) is ProxyState.ISSUANCE_FAILED
    assert context.domain not in context.issued_domains
    assert proxy.detect_state(context) is ProxyState.HTTP_CHALLENGE_READY


def test_post_tls_refused_without_issuance(proxy, context, config):
    proxy.configure_pre_tls(context)
    live = config.live_cert_dir(context.domain)
    live.mkdir(parents=True)
    (live / "fullchain.pem").write_text("cert")
    (live / "privkey.pem").write_text("key")
    artifact = site_artifact(config, context, Phase.POST_TLS, proxy.discover_tls_slots(context))

    with pytest.raises(ArtifactWriteError):
        proxy.writer.write(artifact, context)
    assert not has_proxy_block(proxy.site_text(context))


def test_full_cycle_reaches_configured(proxy, context, config):
    proxy.configure_pre_tls(context)
    proxy.issue_certificate(context)
    assert proxy.state(context) is ProxyState.ISSUED

    proxy.configure_post_tls(context)

    assert proxy.state(context) is ProxyState.CONFIGURED
    assert proxy.detect_state(context) is ProxyState.CONFIGURED
    text = proxy.site_text(context)
    assert has_proxy_block(text, context.backend_url)
    assert f"include {config.LETSENCRYPT_DIR / 'options-ssl-nginx.conf'};" in text
    assert text == proxy.expected_post_tls(context)


def test_tls_slots_prefer_what_the_tool_wrote(proxy, context, config):
    proxy.configure_pre_tls(context)
    custom = config.LETSENCRYPT_DIR / "live" / f"{context.domain}-0001"
    custom.mkdir(parents=True)
    (custom / "fullchain.pem").write_text("cert")
    (custom / "privkey.pem").write_text("key")
    site = config.site_file(context.proxy, context.domain)
    site.write_text(
        site.read_text()
        + f"    ssl_certificate {custom / 'fullchain.pem'}; # managed by Certbot\n"
        + f"    ssl_certificate_key {custom / 'privkey.pem'}; # managed by Certbot\n"
    )

    slots = proxy.discover_tls_slots(context)

    assert slots.certificate == custom / "fullchain.pem"
    assert slots.certificate_key == custom / "privkey.pem"
    assert slots.options_include is None
    assert slots.dhparam is None


def test_missing_certificate_is_an_error(proxy, context):
    with pytest.raises(ProvisionError):
        proxy.discover_tls_slots(context)


def test_apache_cycle(proxy, context, config, host):
    context.proxy = PROXY_APACHE
    proxy.configure_pre_tls(context)
    assert host.ran("a2ensite", "-q", context.domain)
    assert proxy.detect_state(context) is ProxyState.HTTP_CHALLENGE_READY

    proxy.issue_certificate(context)
    assert host.ran("certbot", "--apache")
    proxy.configure_post_tls(context)

    assert proxy.detect_state(context) is ProxyState.CONFIGURED
    assert host.ran("apachectl", "configtest")
    assert host.ran("systemctl", "reload", "apache2")
    assert "SSLCertificateFile" in proxy.site_text(context)


def test_disable_commands(proxy, context, config):
    assert proxy.disable_commands(context) == [f"rm -f -- {config.site_link('nginx', context.domain)}"]
    context.proxy = PROXY_APACHE
    assert proxy.disable_commands(context)[0] == f"a2dissite -q {context.domain} || true"
