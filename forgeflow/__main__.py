from forgeflow.pipeline import main

main()
