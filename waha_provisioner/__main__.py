from waha_provisioner.cli import main

main()
