from matrix_sed.main import run

run()
