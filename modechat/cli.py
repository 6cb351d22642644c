"""modechat CLI: serve, detect, prompt, ask, status and auth commands."""

import click

from modechat.settings import MODES


@click.group()
@click.version_option(version=None, prog_name="modechat", package_name="modechat")
def main():
    """modechat: multi-mode conversational relay."""
    pass


@main.command()
@click.option("--port", default=None, type=int, help="Port to listen on (default: 8860)")
@click.option("--host", default="0.0.0.0", help="Interface to bind")
@click.option("--model", default=None, help="Upstream model id (e.g. gpt-4.1-mini)")
@click.option("--provider", default=None, type=click.Choice(["auto", "litellm", "mock"]), help="Completion provider")
@click.option("--store", default=None, type=click.Choice(["memory", "jsonl"]), help="Message store backend")
@click.option("--token", default=None, help="Auth token")
@click.option("--verbose", is_flag=True, help="Enable verbose logging")
def serve(port, host, model, provider, store, token, verbose):
    """Start the modechat server."""
    import logging

    from dotenv import load_dotenv

    from modechat.settings import env_override

    load_dotenv()

    # Override env vars from CLI flags
    env_override("MODECHAT_PORT", port)
    env_override("MODECHAT_MODEL", model)
    env_override("MODECHAT_PROVIDER", provider)
    env_override("MODECHAT_STORE", store)
    env_override("MODECHAT_AUTH_TOKEN", token)

    log_level = "debug" if verbose else "info"
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    import uvicorn

    from modechat.settings import settings

    actual_port = port or settings.PORT
    click.echo(f"Starting modechat on port {actual_port}...")
    click.echo(f"  Provider: {settings.PROVIDER}")
    click.echo(f"  Model:    {settings.MODEL}")
    click.echo(f"  Store:    {settings.STORE}")
    uvicorn.run(
        "modechat.server:app",
        host=host,
        port=actual_port,
        log_level=log_level,
    )


@main.command()
@click.argument("text")
def detect(text):
    """Detect the language of TEXT and show its normalized form."""
    from modechat.language import LANGUAGE_NAMES, detect_language, normalize_text, text_direction

    language = detect_language(text)
    click.echo(f"Language:   {language} ({LANGUAGE_NAMES.get(language, '?')})")
    click.echo(f"Direction:  {text_direction(language)}")
    normalized = normalize_text(text, language)
    if normalized != text:
        click.echo(f"Normalized: {normalized}")


@main.command()
@click.argument("mode", type=click.Choice(MODES))
@click.option("--lang", "language", default="en", help="Language code the reply should use")
def prompt(mode, language):
    """Print the system prompt used for MODE."""
    from modechat.prompts import build_system_prompt, disclaimer_for

    click.echo(build_system_prompt(mode, language))
    disclaimer = disclaimer_for(mode)
    if disclaimer:
        click.echo(f"\nDisclaimer: {disclaimer}")


@main.command()
@click.argument("message")
@click.option("--mode", "-m", default="medical", type=click.Choice(MODES), help="Conversation mode")
@click.option("--stream/--no-stream", default=True, help="Stream the reply as it is generated")
@click.option("--url", default=None, help="Server URL (default: http://localhost:<port>)")
@click.option("--token", default=None, help="Auth token")
@click.option("--timeout", default=120.0, type=float, help="Client timeout in seconds")
def ask(message, mode, stream, url, token, timeout):
    """Send MESSAGE to a running modechat server."""
    import httpx

    from modechat.settings import settings

    base = (url or f"http://localhost:{settings.PORT}").rstrip("/")
    headers = {}
    token = token or settings.AUTH_TOKEN
    if token:
        headers["Authorization"] = f"Bearer {token}"
    body = {"message": message, "mode": mode, "stream": stream}

    try:
        with httpx.Client(timeout=timeout) as client:
            if stream:
                headers["Accept"] = "text/event-stream"
                with client.stream("POST", f"{base}/chat", json=body, headers=headers) as resp:
                    if resp.status_code != 200:
                        resp.read()
                        _fail(resp)
                    _print_stream(resp)
            else:
                resp = client.post(f"{base}/chat", json=body, headers=headers)
                if resp.status_code != 200:
                    _fail(resp)
                data = resp.json()
                click.echo(data["answer"])
                if data.get("disclaimer"):
                    click.echo(f"\n{data['disclaimer']}")
    except httpx.HTTPError as e:
        click.echo(f"Error: could not reach {base}: {e}", err=True)
        raise SystemExit(1)


def _print_stream(resp) -> None:
    from modechat.streaming import EventKind, EventParser

    parser = EventParser()
    for chunk in resp.iter_text():
        for event in parser.feed(chunk):
            if event.kind is EventKind.META:
                click.echo(f"[{event.payload.get('mode')} / {event.payload.get('language')}]", err=True)
            elif event.kind is EventKind.TOKEN:
                click.echo(event.payload, nl=False)
            elif event.kind is EventKind.DONE:
                click.echo()
                if event.payload.get("disclaimer"):
                    click.echo(f"\n{event.payload['disclaimer']}")
                return
            elif event.kind is EventKind.ERROR:
                click.echo()
                click.echo(f"Error: {event.payload}", err=True)
                raise SystemExit(1)


def _fail(resp) -> None:
    try:
        error = resp.json().get("error", {})
    except ValueError:
        error = {}
    click.echo(f"Error {resp.status_code}: {error.get('message') or resp.text}", err=True)
    if error.get("fallback"):
        click.echo(error["fallback"])
    raise SystemExit(1)


@main.command()
def status():
    """Check if the modechat server is running and show config."""
    import httpx

    from modechat.credentials import list_credentials
    from modechat.settings import settings

    config = settings.describe()
    click.echo("modechat Status")
    click.echo("-" * 40)
    click.echo(f"Provider:      {config['provider']}")
    click.echo(f"Model:         {config['model']}")
    click.echo(f"Store:         {config['store']}")
    click.echo(f"Port:          {settings.PORT}")
    click.echo(f"Log dir:       {settings.LOG_DIR}")
    limits = config["limits"]
    click.echo(f"Rate limits:   send={limits['send']} list={limits['list']} ip={limits['ip']} "
               f"per {limits['window_ms'] // 1000}s")
    click.echo("Timeouts:      " + ", ".join(f"{m}={t:g}s" for m, t in config["timeouts"].items()))
    token = settings.AUTH_TOKEN
    if token:
        click.echo(f"Auth:          {token[:6]}***" if len(token) >= 6 else f"Auth:          {token}")
    else:
        click.echo("Auth:          disabled (local-only)")

    creds = list_credentials()
    if creds:
        click.echo(f"\nCredentials:   {len(creds)} provider(s)")
        for c in creds:
            click.echo(f"  {c['provider']:12s}  {c['masked_token']}  ({c['source']})")
    else:
        click.echo("\nCredentials:   none configured")
        click.echo("  Run 'modechat auth add' or set env vars (OPENAI_API_KEY, etc.)")

    try:
        resp = httpx.get(f"http://localhost:{settings.PORT}/health", timeout=2)
        click.echo(f"\nServer:        RUNNING ({resp.json().get('status', '?')})")
    except (httpx.HTTPError, ValueError):
        click.echo("\nServer:        NOT RUNNING")


@main.group()
def auth():
    """Manage upstream provider credentials."""
    pass


@auth.command(name="add")
@click.option("--provider", "-p", default=None, help="Provider name (e.g. openai, anthropic)")
@click.option("--key", "-k", default=None, help="API key or token")
def auth_add(provider, key):
    """Add an API key for a provider."""
    from modechat.credentials import save_credential

    if not provider:
        provider = click.prompt(
            "Provider",
            type=click.Choice(["openai", "anthropic", "google", "mistral", "deepseek", "groq"], case_sensitive=False),
        )

    if not key:
        key = click.prompt(f"API key for {provider}", hide_input=True)

    if not key or not key.strip():
        click.echo("Error: empty key provided.")
        raise SystemExit(1)

    save_credential(provider, key.strip())
    click.echo(f"\n{provider} credential saved.")
    click.echo("Verify with: modechat auth status")


@auth.command(name="status")
def auth_status():
    """Show configured credentials (tokens are masked)."""
    from modechat.credentials import list_credentials

    creds = list_credentials()
    if not creds:
        click.echo("No credentials configured.")
        click.echo("\nAdd credentials with:")
        click.echo("  modechat auth add")
        click.echo("  Or set env vars: OPENAI_API_KEY, ANTHROPIC_API_KEY, etc.")
        return

    click.echo("Configured Credentials")
    click.echo("-" * 50)
    for c in creds:
        click.echo(f"  {c['provider']:12s}  {c['masked_token']}  ({c['source']})")
    click.echo(f"\n{len(creds)} provider(s) configured.")


@auth.command(name="remove")
@click.argument("provider")
def auth_remove(provider):
    """Remove a stored credential for PROVIDER."""
    from modechat.credentials import remove_credential

    if remove_credential(provider):
        click.echo(f"Removed stored credential for {provider}.")
    else:
        click.echo(f"No stored credential found for {provider}.")
        click.echo("Note: this only removes credentials stored via 'modechat auth'. "
                   "Env vars are not affected.")


if __name__ == "__main__":
    main()
