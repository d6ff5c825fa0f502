"""credvault -- directory-aware credentials for the Anthropic API.

credvault keeps named *profiles* (API keys or imported OAuth tokens) in the
platform secret store, picks one per directory from a ``.claude-profile``
marker, and hands it to a child process through ``ANTHROPIC_API_KEY`` or,
for programs with their own login, by temporarily switching their stored
session.

Typical workflow::

    credvault add work                 # store an API key
    credvault import oauth -p personal # import the current Claude Code login
    credvault init work                # pin this directory to "work"
    credvault exec -- claude           # run with the resolved credential

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the entire package.
    config: XDG paths, settings, and the profile record store.
    resolver: Marker-file profile resolution with a TTL cache.
    process: Child process execution with signal forwarding.
    services: Component wiring for one invocation.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.3.0"
