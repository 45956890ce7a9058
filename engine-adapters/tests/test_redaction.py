from engine_adapters.redaction import redact_text, redact_url


def test_redact_text_masks_tokens():
    raw = "Authorization: Bearer secret-token-123 access_token=abc123 cookie=sessionid=xyz"
    redacted = redact_text(raw)
    assert "secret-token-123" not in redacted
    assert "abc123" not in redacted
    assert "sessionid=xyz" not in redacted
    assert "[REDACTED]" in redacted


def test_redact_text_masks_octopus_api_keys():
    redacted = redact_text("X-Octopus-ApiKey: API-0123456789ABCDEFGHIJ rejected; key API-ZYXWVUTSRQPONMLKJIH0")
    assert "0123456789ABCDEFGHIJ" not in redacted
    assert "ZYXWVUTSRQPONMLKJIH0" not in redacted
    assert "API-[REDACTED]" in redacted


def test_redact_text_sanitizes_urls():
    raw = "Failed to call https://octopus.example.com/api/Spaces-1/projects?apikey=abc123"
    redacted = redact_text(raw)
    assert "abc123" not in redacted
    assert "https://octopus.example.com/..." in redacted


def test_redact_url_keeps_host_only():
    assert redact_url("https://argocd.example.com/api/v1/applications/myapp/resource-tree") == "https://argocd.example.com/..."
    assert redact_url("not a url") == "<redacted-url>"
    assert redact_url("") == ""
