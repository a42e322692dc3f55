"""Credit balances and post-completion deduction."""

PLUGIN_METADATA = {
    "name": "credits",
    "version": "1.0.0",
    "description": "Credit balance lookups and deduction for completed generations.",
}
