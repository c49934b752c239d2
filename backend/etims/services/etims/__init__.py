"""KRA eTIMS integration: transport client, domain service and ledger."""
