"""Engine-side components: settings, logging, outbound calls, persistence and the CLI."""
