import sys

from mesh_bugreport.cli import main

sys.exit(main())
