"""ReviewPilot core: persistent state and upstream review ingestion."""
