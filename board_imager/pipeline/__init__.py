"""Build state machine, rollback guard and the resource ledger it keeps."""
