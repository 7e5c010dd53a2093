from setuptools import setup

# config file
data_files = [("etc/aeroimage", ["etc/aeroimage.conf"])]

setup(name="aeroimage",
      version="0.1.0",
      description="aeroimage",
      long_description="Tool for assembling bootable BIOS and UEFI disk images of the Aero kernel",
      author="The Aero Project Developers",
      url="https://github.com/Andy-Python-Programmer/aero",
      license="GPLv3+",
      packages=["aeroimage"],
      package_dir={"" : "src"},
      install_requires=["pyparted"],
      extras_require={"test": ["pytest", "file-magic"]},
      entry_points={"console_scripts": ["aero-mkimage = aeroimage.cmdline:main"]},
      data_files=data_files
      )
