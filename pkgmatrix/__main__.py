import sys

from pkgmatrix.cli import main

sys.exit(main())
