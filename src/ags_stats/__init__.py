"""System stats daemon serving rolling CPU, memory and network history."""
