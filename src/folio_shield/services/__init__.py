"""Business services for the Folio Shield service."""
