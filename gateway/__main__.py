from gateway.cli import cli

cli(prog_name="agent-gateway")
